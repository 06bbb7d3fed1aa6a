"""Cancel every open order on the configured subaccount (leftovers after a crash)."""
import asyncio
import sys

from quoter.config.config import Settings
from quoter.execution.order_manager import OrderLifecycleManager
from quoter.infra.exchange import AsyncSubmitter, IndexerExchange, load_submitter_factory
from quoter.infra.indexer import AsyncIndexer


async def cancel_leftover_orders(exchange, symbol=None):
    """Adopt whatever the exchange lists as open and cancel it. Returns (found, all_cancelled)."""
    open_orders = await exchange.get_open_orders(symbol)
    manager = OrderLifecycleManager(exchange)
    for s in sorted({o.symbol for o in open_orders if o.symbol}):
        await manager.adopt_open_orders(s)
    found = len(manager.tracked())
    if not found:
        return 0, True
    ok = await manager.cancel_all()
    return found, ok


async def main():
    cfg = Settings.load()
    if not cfg.submitter_factory:
        print("QUOTER_SUBMITTER_FACTORY is not set; cannot sign cancels")
        sys.exit(1)

    indexer = AsyncIndexer(cfg.indexer_url, cfg.address, subaccount=cfg.subaccount, timeout=cfg.http_timeout)
    submitter = AsyncSubmitter(
        load_submitter_factory(cfg.submitter_factory)(cfg),
        timeout=cfg.exchange_timeout,
        retries=cfg.exchange_retries,
    )
    exchange = IndexerExchange(indexer, submitter)
    try:
        orders = await exchange.get_open_orders(cfg.symbol)
        print(f"Total open orders: {len(orders)}")
        counts = {}
        for o in orders:
            counts[o.symbol] = counts.get(o.symbol, 0) + 1
        for s, n in sorted(counts.items()):
            print(f"  {s}: {n} orders")
        if not orders:
            return

        if len(sys.argv) > 1 and sys.argv[1] == "--yes":
            confirm = "yes"
        else:
            confirm = input("\nCancel ALL orders? Type 'yes' to confirm: ")
        if confirm.lower() != "yes":
            print("Cancelled. No orders were modified.")
            return

        found, ok = await cancel_leftover_orders(exchange, cfg.symbol)
        print(f"\nCancelled {found} orders" if ok else f"\nSome of {found} orders could not be cancelled")
        print("\n=== Done ===")
    finally:
        await exchange.close()


if __name__ == "__main__":
    asyncio.run(main())
