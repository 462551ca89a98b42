import argparse
import logging

import uvloop
from fastbencode import bdecode

from dhtrpc import constants
from dhtrpc.node import DHTNode
from dhtrpc.query import AUTO_COMMIT
from dhtrpc.storage import StorageDispatcher, content_key, find_value, put_value
from dhtrpc.utils import short_id

# Configure basic logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
log = logging.getLogger(__name__)


async def start_swarm(size):
    """
    Starts a bootstrap node and `size` storage nodes on localhost.
    """
    bootstrap = DHTNode.bootstrapper(port=0, host="127.0.0.1")
    await bootstrap.run()
    await bootstrap.fully_bootstrapped()
    seed = f"127.0.0.1:{bootstrap.address()[1]}"

    storage_nodes = []
    for i in range(size):
        node = DHTNode(bootstrap=[seed], host="127.0.0.1", handler=StorageDispatcher())
        await node.run()
        await node.fully_bootstrapped()
        log.info(f"Storage node {i + 1}/{size} ready on port {node.address()[1]}")
        storage_nodes.append(node)

    return bootstrap, seed, storage_nodes


async def main(args):
    bootstrap, seed, storage_nodes = await start_swarm(args.nodes)

    client = DHTNode(bootstrap=[seed], ephemeral=True, host="127.0.0.1")
    await client.run()
    await client.fully_bootstrapped()
    log.info(f"Client bootstrapped, knows {len(client.table)} peers")

    value = args.value.encode()
    key = content_key(value)

    # --- Insert ---
    log.info(f"Storing {args.value!r} under {short_id(key)}...")
    insert = await put_value(client, value)
    log.info(f"Stored on {insert.successful_commits} node(s), {len(insert.commit_errors)} commit(s) failed")

    # --- Retrieve ---
    found = await find_value(client, key)
    if found:
        log.info(f"Found {found.value.decode()!r} on {found.from_.host}:{found.from_.port}")
    else:
        log.warning("Value not found.")

    # --- Inventory ---
    if found:
        result = await client.request(bytes(constants.ID_SIZE), constants.CMD_LIST, found.from_)
        for item in bdecode(result.value):
            log.info(f"  {short_id(item[b'key'])}... {item[b'size']} bytes, {item[b'access_count']} reads")

    # --- Delete ---
    delete = client.query(key, constants.CMD_DELETE, commit=AUTO_COMMIT)
    await delete.finished()
    log.info(f"Deleted from {delete.successful_commits} node(s)")

    missing = await find_value(client, key) is None
    log.info("Value is gone." if missing else "Value is still stored somewhere.")

    # --- Shutdown ---
    client.stop()
    for node in storage_nodes:
        node.stop()
    bootstrap.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Store and fetch a value on a local DHT swarm.")
    parser.add_argument("value", nargs="?", default="Hello, Distributed Hash Table!", help="Value to store.")
    parser.add_argument("--nodes", type=int, default=5, help="Number of storage nodes.")
    args = parser.parse_args()

    try:
        uvloop.run(main(args))
    except KeyboardInterrupt:
        log.info("\nScript interrupted by user.")
