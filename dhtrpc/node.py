import asyncio
import functools
import inspect
import logging
import socket

from . import config
from . import constants
from . import utils
from .errors import DHTError, QueryError, TransportClosed
from .lifecycle import Lifecycle, NodeState
from .messages import IncomingRequest, Reply, Request
from .query import NO_COMMIT, Query
from .routing import RoutingTable
from .tokens import TokenAuthority
from .transport import RPC


__version__ = '1.0.0'


class DHTNode:
    """
    A DHT participant: routing table, token authority and RPC transport,
    driven through the lifecycle from CREATED to READY.

    Persistent nodes put their id on every message so that other nodes
    keep them in their routing tables. Ephemeral nodes leave it out and are
    only ever transient contacts. Passing ephemeral=None starts the node
    ephemeral and promotes it to persistent after `adaptive_timeout`
    seconds unless it is firewalled.
    """

    def __init__(self, bootstrap=config.BOOTSTRAP_NODES, ephemeral=False, firewalled=False,
                 host="0.0.0.0", port=0, node_id=None, k=config.K, concurrency=config.ALPHA,
                 max_rounds=config.MAX_QUERY_ROUNDS, timeout=config.REQUEST_TIMEOUT, handler=None,
                 min_bootstrap_peers=config.MIN_BOOTSTRAP_PEERS, bootstrap_rounds=config.BOOTSTRAP_ROUNDS,
                 refresh_interval=config.REFRESH_INTERVAL, adaptive_timeout=config.ADAPTIVE_TIMEOUT,
                 tokens=None):
        self.id = node_id or utils.random_node_id()
        self.adaptive = ephemeral is None
        self.ephemeral = True if ephemeral is None else ephemeral
        self.firewalled = firewalled
        self.host = host
        self.port = port
        self.k = k
        self.concurrency = concurrency
        self.max_rounds = max_rounds
        self.handler = handler
        self.min_bootstrap_peers = min_bootstrap_peers
        self.bootstrap_rounds = bootstrap_rounds
        self.refresh_interval = refresh_interval
        self.adaptive_timeout = adaptive_timeout
        self.log = logging.getLogger("Node")

        self.lifecycle = Lifecycle()
        self.tokens = tokens or TokenAuthority()
        self.table = RoutingTable(self.id, k=k, ping=self._probe)
        self.rpc = RPC(
            table=self.table,
            node_id=None if self.ephemeral else self.id,
            firewalled=firewalled,
            handler=self._handle_request,
            timeout=timeout,
        )
        self.background_tasks = set()
        self._fully_bootstrapped = asyncio.Event()

        resolved_bootstrap_nodes = []
        for addr in bootstrap:
            try:
                resolved_bootstrap_nodes.append(utils.parse_address(addr))
            except (socket.gaierror, ValueError):
                self.log.warning(f"Ignoring unusable bootstrap address {addr!r}")
        self.bootstrap_nodes = tuple(resolved_bootstrap_nodes)

    @classmethod
    def bootstrapper(cls, port=config.DEFAULT_PORT, host="0.0.0.0", **kwargs):
        """A persistent, reachable node that seeds a new swarm."""
        return cls(bootstrap=(), ephemeral=False, firewalled=False, port=port, host=host, **kwargs)

    @property
    def state(self):
        return self.lifecycle.state

    def address(self):
        return self.rpc.address

    def to_list(self):
        return self.table.all_peers()

    def on(self, event, callback):
        return self.lifecycle.subscribe(event, callback)

    def on_request(self, handler):
        self.handler = handler

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def run(self):
        address = await self.rpc.bind(self.host, self.port)
        self.log.info(f"Node {utils.short_id(self.id)} listening on {address[0]}:{address[1]}")
        self.lifecycle.transition(NodeState.LISTENING, address)

        self._spawn(self._bootstrap())
        if self.refresh_interval:
            self._spawn(self._auto_refresh())
        return address

    async def ready(self):
        await self.lifecycle.wait_for(NodeState.READY)
        return self

    async def fully_bootstrapped(self):
        await self._fully_bootstrapped.wait()
        return self

    def stop(self):
        if self.state == NodeState.DESTROYED:
            return
        for task in list(self.background_tasks) + list(self.table.background_tasks):
            task.cancel()
        self.rpc.stop()
        self.lifecycle.transition(NodeState.DESTROYED)
        self._fully_bootstrapped.set()

    async def _bootstrap(self):
        try:
            if self.bootstrap_nodes:
                self.lifecycle.transition(NodeState.BOOTSTRAPPING)
                await self._contact_seeds()
                await self._lookup(self.id)
            self._become_ready()

            rounds = 1
            while (self.bootstrap_nodes and len(self.table) < self.min_bootstrap_peers
                    and rounds < self.bootstrap_rounds):
                await self._lookup(utils.random_node_id())
                rounds += 1

            self.log.info(f"Node {utils.short_id(self.id)} fully bootstrapped with {len(self.table)} peers")
            self._fully_bootstrapped.set()
        except Exception as e:
            self.log.exception("Error while bootstrapping.")
            self.lifecycle.emit("error", e)

    async def _contact_seeds(self):
        results = await asyncio.gather(
            *(self.ping(addr) for addr in self.bootstrap_nodes),
            return_exceptions=True,
        )
        reached = [addr for addr, result in zip(self.bootstrap_nodes, results)
                   if not isinstance(result, BaseException)]
        if reached:
            self.lifecycle.emit("bootstrap", reached)
        else:
            self.log.warning("None of the bootstrap nodes answered.")

    async def _lookup(self, target):
        try:
            await self.find_node(target).finished()
        except QueryError as e:
            self.log.warning(f"Lookup for {utils.short_id(target)} failed: {e}")
            return False
        return True

    def _become_ready(self):
        self.lifecycle.transition(NodeState.READY)
        if not self.ephemeral:
            self.lifecycle.transition(NodeState.PERSISTENT)
            return
        self.lifecycle.transition(NodeState.EPHEMERAL)
        if self.adaptive:
            self._spawn(self._adaptive())

    async def _adaptive(self):
        await asyncio.sleep(self.adaptive_timeout)
        if self.firewalled:
            self.log.info("Node is firewalled, staying ephemeral.")
            return
        self.make_persistent()

    def make_persistent(self):
        if not self.ephemeral:
            return
        self.ephemeral = False
        self.rpc.node_id = self.id
        if self.state == NodeState.EPHEMERAL:
            self.lifecycle.transition(NodeState.PERSISTENT)
            # Let the peers around our id learn about us
            self._spawn(self._lookup(self.id))

    async def refresh(self):
        return await self._lookup(utils.random_node_id())

    async def _auto_refresh(self):
        while True:
            try:
                await asyncio.sleep(self.refresh_interval)
                if self.lifecycle.reached(NodeState.READY):
                    await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception:
                self.log.exception("Error in refresh loop.")

    def query(self, target, command, value=None, commit=NO_COMMIT, **options):
        return Query(self, target, command, value=value, commit=commit, **options)

    def find_node(self, target):
        return Query(self, target, constants.CMD_FIND_NODE, internal=True)

    async def send_request(self, request, addr, peer_id=None, timeout=None):
        return await self.rpc.request(request, addr, timeout=timeout, peer_id=peer_id)

    async def request(self, target, command, addr, value=None, token=None, timeout=None):
        """
        Sends one application request straight to `addr` and returns the Reply.
        """
        if isinstance(addr, str):
            addr = utils.parse_address(addr)
        request = Request(command=command, target=target, value=value, token=token)
        return await self.send_request(request, addr, timeout=timeout)

    async def ping(self, addr, timeout=None):
        if isinstance(addr, str):
            addr = utils.parse_address(addr)
        request = Request(command=constants.CMD_PING, internal=True)
        return await self.send_request(request, addr, timeout=timeout)

    async def _probe(self, peer):
        request = Request(command=constants.CMD_PING, internal=True)
        try:
            await self.send_request(request, peer.addr, peer_id=peer.id, timeout=config.PROBE_TIMEOUT)
        except DHTError:
            return False
        return True

    def _closer_nodes(self, target):
        if target is None:
            return []
        return [
            (peer.id, peer.host, peer.port)
            for peer in self.table.closest(target, self.k, include_firewalled=False)
        ]

    def _send_reply(self, reply, addr):
        try:
            self.rpc.send_message(reply, addr)
        except TransportClosed:
            self.log.debug(f"Dropping reply to {addr[0]}:{addr[1]}, transport closed")

    def _handle_request(self, request, addr):
        if request.internal:
            self._handle_internal(request, addr)
            return

        incoming = IncomingRequest(
            request,
            addr,
            authorized=self.tokens.verify(addr, request.token),
            respond=functools.partial(self._respond, request, addr),
        )
        self.lifecycle.emit("request", incoming)

        if self.handler is None:
            incoming.error(constants.ERROR_UNKNOWN_COMMAND)
            return

        try:
            result = self.handler(incoming)
        except Exception as e:
            self._handler_failed(incoming, e)
            return
        if inspect.isawaitable(result):
            self._spawn(self._await_handler(incoming, result))
        else:
            self._ensure_answered(incoming)

    async def _await_handler(self, incoming, result):
        try:
            await result
        except Exception as e:
            self._handler_failed(incoming, e)
        else:
            self._ensure_answered(incoming)

    def _ensure_answered(self, incoming):
        # An unanswered request would time out and count against a live peer
        if not incoming.replied:
            self.log.warning(f"Dispatcher returned without answering {incoming!r}")
            incoming.error(constants.ERROR_SERVER)

    def _handler_failed(self, incoming, exc):
        self.log.error(f"Dispatcher failed on {incoming!r}", exc_info=exc)
        self.lifecycle.emit("error", exc)
        if not incoming.replied:
            incoming.error(constants.ERROR_SERVER)

    def _respond(self, request, addr, value, error):
        reply = Reply(
            tid=request.tid,
            value=value,
            error=error,
            nodes=self._closer_nodes(request.target),
        )
        if not error:
            reply.token = self.tokens.token_for(addr)
        self._send_reply(reply, addr)

    def _handle_internal(self, request, addr):
        if request.command == constants.CMD_PING:
            reply = Reply(tid=request.tid)
        elif request.command == constants.CMD_FIND_NODE and request.target is not None:
            reply = Reply(tid=request.tid, nodes=self._closer_nodes(request.target))
        else:
            reply = Reply(tid=request.tid, error=constants.ERROR_UNKNOWN_COMMAND)
        self._send_reply(reply, addr)
