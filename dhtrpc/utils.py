import os
import socket
import struct
from socket import inet_ntoa
from struct import unpack

from . import constants


def random_node_id(size=constants.ID_SIZE):
    return os.urandom(size)


def short_id(node_id):
    """Hex prefix of an id, for log lines."""
    if not node_id:
        return "-"
    return node_id.hex()[:8]


def get_distance(node1_id, node2_id):
    """
    Calculate the XOR distance between two node IDs.
    """
    return int.from_bytes(node1_id, 'big') ^ int.from_bytes(node2_id, 'big')


def distance_key(target):
    """
    Sort key ordering ids by XOR distance to target, ties broken by the raw bytes.
    """
    def key(node_id):
        return get_distance(node_id, target), node_id
    return key


def common_prefix_len(node1_id, node2_id):
    """
    Number of leading bits shared by two ids (ID_BITS when they are equal).
    """
    distance = get_distance(node1_id, node2_id)
    return len(node1_id) * 8 - distance.bit_length()


def split_nodes(nodes):
    size = constants.COMPACT_NODE_SIZE
    length = len(nodes)
    if (length % size) != 0:
        return

    for i in range(0, length, size):
        nid = nodes[i:i+constants.ID_SIZE]
        ip = inet_ntoa(nodes[i+constants.ID_SIZE:i+constants.ID_SIZE+4])
        port = unpack("!H", nodes[i+constants.ID_SIZE+4:i+size])[0]
        yield nid, ip, port


def pack_nodes(peers):
    """
    Packs (id, host, port) triples into the compact node info format.
    """
    packed_nodes = []
    for node_id, host, port in peers:
        try:
            if len(node_id) != constants.ID_SIZE:
                continue
            packed_nodes.append(node_id + socket.inet_aton(host) + struct.pack("!H", port))
        except (TypeError, struct.error, OSError):
            # Skip nodes with invalid data
            continue
    return b"".join(packed_nodes)


def parse_address(value, default_port=None):
    """
    Turns "host:port" (or a (host, port) pair) into an (ip, port) tuple,
    resolving host names.
    """
    if isinstance(value, (tuple, list)):
        host, port = value
    else:
        host, sep, port = value.rpartition(":")
        if not sep:
            host, port = value, default_port
        if port is None:
            raise ValueError(f"Address {value!r} has no port")
    return socket.gethostbyname(host), int(port)
