import asyncio
import argparse
import logging
import signal
from datetime import datetime, timezone

import uvloop

from dhtrpc import config
from dhtrpc.node import DHTNode
from dhtrpc.storage import StorageDispatcher
from dhtrpc.utils import short_id

# Configure basic logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
log = logging.getLogger(__name__)


async def print_diagnostics(node, dispatcher, interval):
    """
    A background task to periodically print routing table and storage statistics.
    """
    while True:
        try:
            await asyncio.sleep(interval)

            non_empty_buckets = sum(1 for bucket in node.table.buckets if len(bucket))
            log.info("=" * 20 + " Node Diagnostics " + "=" * 20)
            log.info(f"[State]         {node.state.name}")
            log.info(f"[Routing Table] Total Peers: {len(node.table)} | "
                     f"Non-empty Buckets: {non_empty_buckets}/{len(node.table.buckets)}")
            peers = node.table.all_peers()
            if peers:
                veteran = min(peers, key=lambda peer: peer.first_seen)
                known_for = datetime.now(timezone.utc) - veteran.first_seen
                log.info(f"[Oldest Peer]   {short_id(veteran.id)} at {veteran.host}:{veteran.port}, "
                         f"known for {int(known_for.total_seconds())}s")
            if dispatcher is not None:
                stats = dispatcher.store.stats
                log.info(f"[Storage]       Items: {len(dispatcher.store)} | Stored: {stats['stored']} | "
                         f"Served: {stats['served']} | Deleted: {stats['deleted']}")
            log.info("=" * 58)

        except asyncio.CancelledError:
            break
        except Exception:
            log.exception("Error in diagnostics task.")


async def main(args):
    loop = asyncio.get_running_loop()

    if args.bootstrapper:
        node = DHTNode.bootstrapper(port=args.port, host=args.host)
    else:
        node = DHTNode(
            bootstrap=args.bootstrap or config.BOOTSTRAP_NODES,
            ephemeral=None if args.adaptive else args.ephemeral,
            firewalled=args.firewalled,
            host=args.host,
            port=args.port,
        )

    dispatcher = None
    if args.storage:
        dispatcher = StorageDispatcher()
        node.on_request(dispatcher)

    node.on("bootstrap", lambda seeds: log.info(f"Reached {len(seeds)} bootstrap node(s)"))
    node.on("ready", lambda: log.info(f"Node {short_id(node.id)} is ready"))
    node.on("persistent", lambda: log.info("Node is now persistent"))

    address = await node.run()
    log.info(f"Node is running on port {address[1]}. Press Ctrl+C to stop.")

    diag_task = asyncio.create_task(print_diagnostics(node, dispatcher, args.stats_interval))

    stop = asyncio.Future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)
    await stop

    log.info("Shutting down...")
    diag_task.cancel()
    node.stop()
    await asyncio.gather(diag_task, return_exceptions=True)
    log.info("Node shut down gracefully.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a DHT node.")
    parser.add_argument("--host", default="0.0.0.0", help="Address to bind.")
    parser.add_argument("--port", type=int, default=config.DEFAULT_PORT, help="DHT listening port.")
    parser.add_argument("--bootstrap", action="append", metavar="HOST:PORT",
                        help="Seed node address, may be repeated.")
    parser.add_argument("--bootstrapper", action="store_true", help="Start a new swarm as its first node.")
    parser.add_argument("--storage", action="store_true", help="Serve STORE/GET/LIST/DELETE from memory.")
    parser.add_argument("--ephemeral", action="store_true", help="Never join other nodes' routing tables.")
    parser.add_argument("--adaptive", action="store_true", help="Start ephemeral, become persistent once stable.")
    parser.add_argument("--firewalled", action="store_true", help="Advertise the node as unreachable.")
    parser.add_argument("--stats-interval", type=int, default=30, help="Seconds between diagnostics.")
    args = parser.parse_args()

    if not args.bootstrapper and not (args.bootstrap or config.BOOTSTRAP_NODES):
        log.warning("No bootstrap nodes given, the node will wait for others to contact it.")

    try:
        uvloop.run(main(args))
    except KeyboardInterrupt:
        log.info("Node stopped by user.")
