import pytest

from hycore.frag import Defragger, frag_udp_message
from hycore.protocol import UDPMessage


def _msg(frag_id, frag_count, data, packet_id=123):
    return UDPMessage(
        session_id=123,
        packet_id=packet_id,
        frag_id=frag_id,
        frag_count=frag_count,
        addr="test:123",
        data=data,
    )


@pytest.mark.parametrize(
    "message,max_size,expected",
    [
        (_msg(0, 1, b"hello"), 100, [_msg(0, 1, b"hello")]),
        (_msg(0, 1, b"hello"), 20, [_msg(0, 2, b"hel"), _msg(1, 2, b"lo")]),
        (
            _msg(0, 1, b"abcdefgh"),
            19,
            [_msg(0, 4, b"ab"), _msg(1, 4, b"cd"), _msg(2, 4, b"ef"), _msg(3, 4, b"gh")],
        ),
    ],
    ids=["no frag", "2 frags", "4 frags"],
)
def test_frag_udp_message(message, max_size, expected):
    assert frag_udp_message(message, max_size) == expected


def test_frag_fragments_fit_max_size():
    message = _msg(0, 1, bytes(range(200)))
    frags = frag_udp_message(message, 50)
    assert all(frag.size() <= 50 for frag in frags)
    assert b"".join(frag.data for frag in frags) == message.data


def test_frag_no_room_for_payload():
    with pytest.raises(ValueError):
        frag_udp_message(_msg(0, 1, b"hello world"), 10)


def test_frag_then_defrag_round_trip():
    message = _msg(0, 1, bytes(range(256)) * 3, packet_id=77)
    defragger = Defragger()
    results = [defragger.feed(frag) for frag in frag_udp_message(message, 100)]
    assert all(result is None for result in results[:-1])
    assert results[-1] == message


def test_defragger():
    steps = [
        (_msg(0, 1, b"hello", 987), _msg(0, 1, b"hello", 987)),
        (_msg(0, 2, b"hello ", 987), None),
        (_msg(1, 2, b"moto", 987), _msg(0, 1, b"hello moto", 987)),
        (_msg(0, 3, b"deco", 987), None),
        (_msg(1, 3, b"*", 987), None),
        (_msg(2, 3, b"27", 987), _msg(0, 1, b"deco*27", 987)),
        (_msg(1, 2, b"shinsekai", 233), None),
        (_msg(1, 2, b"what???", 244), None),
        (_msg(1, 2, b" annaijo", 233), None),
        (_msg(88, 2, b"shinsekai", 233), None),
        (_msg(0, 2, b"shinsekai", 233), _msg(0, 1, b"shinsekai annaijo", 233)),
    ]
    defragger = Defragger()
    for message, expected in steps:
        assert defragger.feed(message) == expected