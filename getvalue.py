import argparse
import logging
import sys

import uvloop

from dhtrpc import config
from dhtrpc.node import DHTNode
from dhtrpc.storage import content_key, find_value, put_value

# Configure basic logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
log = logging.getLogger(__name__)


async def insert_file(node, path):
    """
    Stores the contents of `path` and returns the content key.
    """
    with open(path, "rb") as f:
        data = f.read()
    key = content_key(data)
    log.info(f"Inserting {len(data)} bytes, key {key.hex()}")

    query = await put_value(node, data)
    log.info(f"Stored on {query.successful_commits} node(s), {len(query.commit_errors)} commit(s) failed")
    return key


async def retrieve_file(node, key_hex, output=None):
    """
    Fetches the value stored under `key_hex`, optionally writing it to `output`.
    Returns the value, or None when no peer holds a matching copy.
    """
    key = bytes.fromhex(key_hex)
    log.info(f"Searching for {key_hex}")

    reply = await find_value(node, key)
    if reply is None:
        log.warning("Value not found in the DHT.")
        return None

    log.info(f"Found {len(reply.value)} bytes on {reply.from_.host}:{reply.from_.port}")
    if output:
        with open(output, "wb") as f:
            f.write(reply.value)
        log.info(f"Saved to {output}")
    return reply.value


async def main(args):
    # A one-shot client never joins other nodes' routing tables
    node = DHTNode(bootstrap=args.bootstrap or config.BOOTSTRAP_NODES, ephemeral=True)
    await node.run()
    await node.fully_bootstrapped()
    log.info(f"Node bootstrapped with {len(node.table)} peers")

    try:
        if args.command == "insert":
            key = await insert_file(node, args.path)
            print(key.hex())
            return 0
        value = await retrieve_file(node, args.key, args.output)
        if value is None:
            return 1
        if not args.output:
            sys.stdout.buffer.write(value)
        return 0
    finally:
        node.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Insert or retrieve content-addressed files on the DHT.")
    parser.add_argument("--bootstrap", action="append", metavar="HOST:PORT",
                        help="Seed node address, may be repeated.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    insert_parser = subparsers.add_parser("insert", help="Store a file under the SHA-256 of its contents.")
    insert_parser.add_argument("path", help="File to store.")

    retrieve_parser = subparsers.add_parser("retrieve", help="Fetch a file by its hex key.")
    retrieve_parser.add_argument("key", help="Hex SHA-256 key printed by insert.")
    retrieve_parser.add_argument("-o", "--output", help="Write the value to this file instead of stdout.")
    args = parser.parse_args()

    if not (args.bootstrap or config.BOOTSTRAP_NODES):
        parser.error("no bootstrap nodes: pass --bootstrap or set DHT_BOOTSTRAP")

    try:
        sys.exit(uvloop.run(main(args)))
    except KeyboardInterrupt:
        pass
