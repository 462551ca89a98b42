import pytest
from dhtrpc import utils
from dhtrpc import constants


def test_split_nodes():
    # Test with a valid node string for one node
    # Node ID: 32 bytes of 'a'
    # IP: 192.168.1.1 -> b'\xc0\xa8\x01\x01'
    # Port: 6881 -> b'\x1a\xe1'
    node_id = b'a' * 32
    node_addr = b'\xc0\xa8\x01\x01\x1a\xe1'
    nodes_data = node_id + node_addr
    expected_nodes = [(node_id, "192.168.1.1", 6881)]
    result = list(utils.split_nodes(nodes_data))
    assert result == expected_nodes

    # Test with a string for two nodes
    node_id_2 = b'b' * 32
    node_addr_2 = b'\x0a\x0a\x0a\x0a\xff\xff'
    nodes_data_two = nodes_data + node_id_2 + node_addr_2
    expected_nodes_two = [
        (node_id, "192.168.1.1", 6881),
        (node_id_2, "10.10.10.10", 65535)
    ]
    result_two = list(utils.split_nodes(nodes_data_two))
    assert result_two == expected_nodes_two

    # Test with an empty string
    assert list(utils.split_nodes(b'')) == []

    # Test with a malformed string (not a multiple of 38)
    assert list(utils.split_nodes(b'a' * 37)) == []


def test_pack_nodes_skips_invalid_entries():
    good = (b'a' * 32, "127.0.0.1", 6881)
    short_id = (b'b' * 5, "127.0.0.1", 6882)
    bad_host = (b'c' * 32, "not an ip", 6883)

    packed = utils.pack_nodes([good, short_id, bad_host])

    assert len(packed) == constants.COMPACT_NODE_SIZE
    assert list(utils.split_nodes(packed)) == [good]


def test_get_distance():
    id1 = b'\x00' * 32
    id2 = b'\x00' * 31 + b'\x01'
    assert utils.get_distance(id1, id2) == 1

    id3 = b'\xff' * 32
    expected_distance = (2**256) - 1
    assert utils.get_distance(id3, id1) == expected_distance

    # Test distance is symmetric and zero to itself
    assert utils.get_distance(id1, id3) == utils.get_distance(id3, id1)
    assert utils.get_distance(id3, id3) == 0


def test_distance_is_symmetric_for_random_ids():
    for _ in range(50):
        a = utils.random_node_id()
        b = utils.random_node_id()
        assert utils.get_distance(a, b) == utils.get_distance(b, a)
        assert utils.get_distance(a, a) == 0


def test_distance_key_orders_by_distance_then_bytes():
    target = b'\x00' * 32
    near = b'\x00' * 31 + b'\x01'
    far = b'\x80' + b'\x00' * 31
    ids = [far, target, near]

    assert sorted(ids, key=utils.distance_key(target)) == [target, near, far]


def test_common_prefix_len():
    a = b'\x00' * 32
    assert utils.common_prefix_len(a, a) == constants.ID_BITS
    assert utils.common_prefix_len(a, b'\x80' + b'\x00' * 31) == 0
    assert utils.common_prefix_len(a, b'\x01' + b'\x00' * 31) == 7
    assert utils.common_prefix_len(a, b'\x00' * 31 + b'\x01') == 255


def test_parse_address():
    assert utils.parse_address("127.0.0.1:10001") == ("127.0.0.1", 10001)
    assert utils.parse_address(("127.0.0.1", "10002")) == ("127.0.0.1", 10002)
    assert utils.parse_address("127.0.0.1", default_port=6881) == ("127.0.0.1", 6881)

    with pytest.raises(ValueError):
        utils.parse_address("127.0.0.1")
