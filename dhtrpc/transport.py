import asyncio
import collections
import logging
import random
import struct
import time

from . import config
from . import constants
from .errors import RequestTimeout, TransportClosed
from .messages import Reply, Request, decode_message, encode_message
from .routing import PeerRecord


class RPC(asyncio.DatagramProtocol):
    """
    Request/reply layer over a UDP socket.

    Every outbound request gets a fresh transaction id and waits on a future
    until the matching reply arrives from the address it was sent to, or the
    timeout expires. Inbound requests go to the registered handler.
    """

    def __init__(self, table=None, node_id=None, firewalled=False, handler=None, timeout=config.REQUEST_TIMEOUT):
        self.table = table
        self.node_id = node_id
        self.firewalled = firewalled
        self.handler = handler
        self.timeout = timeout
        self.transport = None
        self.log = logging.getLogger("RPC")
        self._pending_queries = {}
        self._tid = random.randrange(0x10000)
        self.background_tasks = set()
        self.rate_limiter = {}
        self.cleanup_task = None
        self.__running = False

    @property
    def address(self):
        if self.transport is None:
            return None
        return self.transport.get_extra_info('sockname')[:2]

    async def bind(self, host="0.0.0.0", port=config.DEFAULT_PORT):
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, local_addr=(host, port))
        self.__running = True

        cleanup_task = asyncio.ensure_future(self._cleanup_rate_limiter())
        self.background_tasks.add(cleanup_task)
        cleanup_task.add_done_callback(self.background_tasks.discard)
        self.cleanup_task = cleanup_task
        return self.address

    def on_request(self, handler):
        self.handler = handler

    def connection_made(self, transport):
        self.transport = transport

    def connection_lost(self, exc):
        self.__running = False
        self._fail_pending()

    def error_received(self, exc):
        # ICMP errors for unreachable peers; the pending request times out on its own
        self.log.debug(f"Socket error: {exc}")

    def stop(self):
        self.__running = False
        if self.cleanup_task:
            self.cleanup_task.cancel()
        if self.transport:
            self.transport.close()
            self.transport = None
        self._fail_pending()

    def _fail_pending(self):
        pending = list(self._pending_queries.values())
        self._pending_queries.clear()
        for future, _ in pending:
            if not future.done():
                future.set_exception(TransportClosed())

    def _allow(self, addr):
        if not config.RATE_LIMIT_REQUESTS:
            return True

        now = time.monotonic()
        if addr not in self.rate_limiter:
            self.rate_limiter[addr] = collections.deque()

        timestamps = self.rate_limiter[addr]

        # Remove timestamps older than the window
        while timestamps and timestamps[0] < now - config.RATE_LIMIT_WINDOW:
            timestamps.popleft()

        if len(timestamps) >= config.RATE_LIMIT_REQUESTS:
            return False

        timestamps.append(now)
        return True

    def datagram_received(self, data, addr):
        addr = addr[:2]
        if not self._allow(addr):
            # Drop packet
            return

        try:
            msg = decode_message(data)
        except Exception:
            return

        if isinstance(msg, Reply):
            self.handle_reply(msg, addr)
        else:
            self.handle_request(msg, addr)

    def _touch_peer(self, msg, addr):
        if self.table is None or msg.id is None:
            return
        self.table.add_or_refresh(PeerRecord(
            id=msg.id,
            host=addr[0],
            port=addr[1],
            firewalled=msg.firewalled,
        ))

    def handle_reply(self, reply, addr):
        entry = self._pending_queries.get(reply.tid)
        if entry is None:
            return
        future, expected_addr = entry
        if tuple(expected_addr) != tuple(addr):
            # Same transaction id from somewhere else, not our answer
            return

        del self._pending_queries[reply.tid]
        self._touch_peer(reply, addr)
        if not future.done():
            future.set_result(reply)

    def handle_request(self, request, addr):
        self._touch_peer(request, addr)
        if self.handler is None:
            return
        try:
            self.handler(request, addr)
        except Exception:
            self.log.exception(f"Error handling command {request.command} from {addr[0]}:{addr[1]}")
            self.send_message(Reply(tid=request.tid, id=self.node_id, error=constants.ERROR_SERVER), addr)

    def send_message(self, message, addr):
        if self.transport is None:
            raise TransportClosed()
        message.id = self.node_id
        message.firewalled = self.firewalled
        self.transport.sendto(encode_message(message), tuple(addr))

    def _next_tid(self):
        for _ in range(0x10000):
            self._tid = (self._tid + 1) & 0xffff
            tid = struct.pack("!H", self._tid)
            if tid not in self._pending_queries:
                return tid
        raise RuntimeError("No free transaction ids")

    async def request(self, request: Request, addr, timeout=None, peer_id=None) -> Reply:
        """
        Sends a request and waits for its reply. Error replies are returned
        as they are; only a missing reply raises.
        """
        if self.transport is None:
            raise TransportClosed()

        tid = self._next_tid()
        request.tid = tid
        addr = tuple(addr)

        future = asyncio.get_running_loop().create_future()
        self._pending_queries[tid] = (future, addr)

        try:
            self.send_message(request, addr)
            return await asyncio.wait_for(future, timeout or self.timeout)
        except asyncio.TimeoutError:
            if peer_id is not None and self.table is not None:
                self.table.record_failure(peer_id)
            raise RequestTimeout(addr) from None
        finally:
            self._pending_queries.pop(tid, None)

    async def _cleanup_rate_limiter(self):
        """
        Periodically cleans up the rate_limiter dictionary to remove stale entries.
        """
        while self.__running:
            try:
                await asyncio.sleep(config.RATE_LIMIT_CLEANUP_INTERVAL)

                now = time.monotonic()
                initial_size = len(self.rate_limiter)

                stale_addrs = [
                    addr for addr, timestamps in self.rate_limiter.items()
                    if not timestamps or timestamps[-1] < now - config.RATE_LIMIT_CLEANUP_INTERVAL
                ]

                for addr in stale_addrs:
                    del self.rate_limiter[addr]

                if initial_size > 0:
                    self.log.debug(
                        f"Rate limiter cleanup: "
                        f"Removed {len(stale_addrs)} stale entries. "
                        f"Size changed from {initial_size} to {len(self.rate_limiter)}."
                    )

            except asyncio.CancelledError:
                break
            except Exception:
                self.log.exception("Error in rate limiter cleanup task.")
