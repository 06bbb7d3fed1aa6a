"""Check open orders, positions and collateral for the configured subaccount."""
import asyncio

from quoter.config.config import Settings
from quoter.infra.indexer import AsyncIndexer


async def main():
    cfg = Settings.load()
    indexer = AsyncIndexer(cfg.indexer_url, cfg.address, subaccount=cfg.subaccount, timeout=cfg.http_timeout)
    try:
        orders = await indexer.open_orders(cfg.symbol)
        print(f"Open orders: {len(orders)}")
        symbols = {}
        for o in orders:
            symbols[o.symbol] = symbols.get(o.symbol, 0) + 1
        for s, n in sorted(symbols.items()):
            print(f"  {s}: {n}")

        print("\nPositions:")
        for p in await indexer.positions():
            if p.size != 0:
                side = p.side.value if p.side else "?"
                print(f"  {p.symbol}: {side} {p.size} @ {p.entry_price} (uPnL {p.unrealized_pnl:+.2f})")

        print(f"\nUSDC: {await indexer.balance('USDC')}")
    finally:
        await indexer.close()


if __name__ == "__main__":
    asyncio.run(main())
