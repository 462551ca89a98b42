import hashlib
import logging
import time

from fastbencode import bencode

from . import constants
from . import utils
from .query import AUTO_COMMIT


log = logging.getLogger(__name__)


class MemoryStore:
    """
    In-memory key/value store with per-key bookkeeping.
    """

    def __init__(self):
        self.values = {}
        self.metadata = {}
        self.stats = {
            "stored": 0,
            "served": 0,
            "deleted": 0,
            "started_at": time.time(),
        }

    def __len__(self):
        return len(self.values)

    def __contains__(self, key):
        return key in self.values

    def get(self, key):
        value = self.values.get(key)
        if value is not None:
            meta = self.metadata[key]
            meta["access_count"] += 1
            meta["last_access"] = time.time()
            self.stats["served"] += 1
        return value

    def peek(self, key):
        return self.values.get(key)

    def set(self, key, value, stored_by=None):
        self.values[key] = value
        self.metadata[key] = {
            "stored_at": time.time(),
            "stored_by": stored_by,
            "size": len(value),
            "access_count": 0,
        }
        self.stats["stored"] += 1

    def delete(self, key):
        if key not in self.values:
            return False
        del self.values[key]
        del self.metadata[key]
        self.stats["deleted"] += 1
        return True

    def list(self):
        return [(key, self.values[key], self.metadata[key]) for key in self.values]


class StorageDispatcher:
    """
    Command dispatcher serving STORE, GET, LIST and DELETE from a store.

    Writes are only applied when the request carries a token this node
    handed to the sender. A write without a token is the read phase of a
    query: it is answered like a GET so that the reply, which the node
    stamps with a fresh token, lets the sender come back with the write.
    """

    def __init__(self, store=None):
        self.store = store if store is not None else MemoryStore()
        self.log = logging.getLogger("Storage")
        self.handlers = {
            constants.CMD_STORE: self.handle_store,
            constants.CMD_GET: self.handle_get,
            constants.CMD_LIST: self.handle_list,
            constants.CMD_DELETE: self.handle_delete,
        }

    def __call__(self, request):
        handler = self.handlers.get(request.command)
        if handler is None:
            self.log.debug(f"Unknown command {request.command} from {request.from_.host}:{request.from_.port}")
            return request.error(constants.ERROR_UNKNOWN_COMMAND)

        if request.command in constants.WRITE_COMMANDS and not request.authorized:
            if request.token is not None:
                self.log.info(f"Rejected {constants.STORAGE_COMMANDS[request.command]} with bad token "
                              f"from {request.from_.host}:{request.from_.port}")
                return request.error(constants.ERROR_INVALID_TOKEN)
            return self.handle_read_phase(request)

        return handler(request)

    def handle_store(self, request):
        if request.target is None or request.value is None:
            return request.error(constants.ERROR_BAD_REQUEST)
        stored_by = f"{request.from_.host}:{request.from_.port}"
        self.store.set(request.target, request.value, stored_by=stored_by)
        self.log.info(f"Stored {utils.short_id(request.target)} ({len(request.value)} bytes) for {stored_by}")
        request.reply(None)

    def handle_read_phase(self, request):
        request.reply(self.store.peek(request.target) if request.target is not None else None)

    def handle_get(self, request):
        value = self.store.get(request.target) if request.target is not None else None
        request.reply(value)

    def handle_list(self, request):
        inventory = [
            {
                b"key": key,
                b"size": meta["size"],
                b"stored_at": int(meta["stored_at"]),
                b"access_count": meta["access_count"],
            }
            for key, _, meta in self.store.list()
        ]
        request.reply(bencode(inventory))

    def handle_delete(self, request):
        if request.target is not None and self.store.delete(request.target):
            self.log.info(f"Deleted {utils.short_id(request.target)}")
            request.reply(b"deleted")
        else:
            request.reply(b"not-found")


def content_key(value):
    """Values are addressed by their SHA-256 digest."""
    return hashlib.sha256(value).digest()


async def put_value(node, value, min_commits=0):
    """
    Stores `value` under its content key on the peers closest to it.
    Returns the finished query.
    """
    query = node.query(content_key(value), constants.CMD_STORE, value=value,
                       commit=AUTO_COMMIT, min_commits=min_commits)
    return await query.finished()


async def find_value(node, key):
    """
    Looks up a content-addressed value. Replies whose value does not hash to
    `key` are skipped, so a single lying peer cannot poison the result.
    Returns the first matching QueryReply, or None.
    """
    query = node.query(key, constants.CMD_GET)
    async for reply in query:
        if not reply.value:
            continue
        if content_key(reply.value) == key:
            query.close()
            return reply
        log.warning(f"Discarding value for {utils.short_id(key)} from "
                    f"{reply.from_.host}:{reply.from_.port}, hash mismatch")
    return None
