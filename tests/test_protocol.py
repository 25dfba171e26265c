import json
from datetime import datetime, timedelta, timezone

import pytest

from localchat.protocol import (
    ClearDaemonPeerCache,
    DaemonStatus,
    ErrorMessage,
    GetPeers,
    HistoryResponse,
    IdentityInfo,
    IpcPeer,
    Message,
    NewMessage,
    PeerList,
    ProtocolError,
    RequestHistory,
    SendMessage,
    SetUsername,
    Success,
    decode_command,
    decode_daemon_message,
    decode_message,
    encode,
    format_timestamp,
    parse_timestamp,
)

UTC = timezone.utc


def _message(**overrides):
    fields = dict(
        id="m-1",
        sender="alice - abcd1234",
        recipient="bob - wxyz9876",
        content="hello there",
        timestamp=datetime(2024, 5, 1, 12, 30, 15, 250000, tzinfo=UTC),
        is_self=False,
    )
    fields.update(overrides)
    return Message(**fields)


def test_unit_command_is_bare_string():
    assert encode(GetPeers()) == '"GetPeers"'


def test_struct_command_wire_form():
    assert encode(SetUsername("alice")) == '{"SetUsername":{"username":"alice"}}'


def test_timestamp_without_fraction_ends_in_z():
    moment = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)
    assert format_timestamp(moment) == "2024-05-01T12:00:00Z"


@pytest.mark.parametrize(
    "command",
    [
        GetPeers(),
        ClearDaemonPeerCache(),
        SendMessage(recipient_id="bob - wxyz9876", content="hi ✈"),
        SetUsername(username="My Cool Name"),
        RequestHistory(peer_id="bob", since_timestamp=None),
        RequestHistory(peer_id="bob", since_timestamp=datetime(2023, 1, 2, 3, 4, 5, 6, tzinfo=UTC)),
    ],
)
def test_command_round_trip(command):
    assert decode_command(encode(command)) == command


@pytest.mark.parametrize(
    "message",
    [
        DaemonStatus(is_connected_to_network=True, active_interface_name="eth0"),
        DaemonStatus(is_connected_to_network=False, active_interface_name=None),
        PeerList([IpcPeer("a", "alice", "192.168.1.5", 12345), IpcPeer("b", "bob")]),
        PeerList([]),
        NewMessage(_message()),
        HistoryResponse(peer_id="bob", messages=[_message(), _message(id="m-2", is_self=True)]),
        ErrorMessage("History feature not yet implemented"),
        IdentityInfo(user_id="alice - abcd1234"),
        Success("Daemon peer cache cleared."),
    ],
)
def test_daemon_message_round_trip(message):
    assert decode_daemon_message(encode(message)) == message


def test_message_round_trip():
    message = _message(content="línea ünïcode")
    assert decode_message(encode(message)) == message


def test_encoded_message_has_struct_fields():
    data = json.loads(encode(_message()))
    assert list(data) == ["id", "sender", "recipient", "content", "timestamp", "is_self"]
    assert data["is_self"] is False


def test_newtype_variant_wraps_payload():
    data = json.loads(encode(ErrorMessage("boom")))
    assert data == {"Error": "boom"}


def test_peer_list_is_array_of_peers():
    data = json.loads(encode(PeerList([IpcPeer("a", "alice", "10.0.0.2", 12346)])))
    assert data == {"PeerList": [{"id": "a", "username": "alice", "ip": "10.0.0.2", "port": 12346}]}


def test_peer_list_stores_tuple():
    peers = PeerList([IpcPeer("a", "alice")])
    assert peers.peers == (IpcPeer("a", "alice"),)


def test_client_side_peer_ignores_address_fields():
    text = '{"PeerList":[{"id":"x","username":"xavier","ip":"10.1.1.1","port":9}]}'
    result = decode_daemon_message(text)
    assert result.peers[0].id == "x"
    assert result.peers[0].port == 9


def test_unit_variant_accepts_map_with_null():
    assert decode_command('{"ClearDaemonPeerCache":null}') == ClearDaemonPeerCache()


def test_request_history_missing_since_is_none():
    result = decode_command('{"RequestHistory":{"peer_id":"p"}}')
    assert result == RequestHistory(peer_id="p", since_timestamp=None)


def test_decode_bytes():
    assert decode_command(b'"GetPeers"') == GetPeers()


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        '"Unknown"',
        '"SendMessage"',
        '{"SendMessage":{"recipient_id":"a"}}',
        '{"SetUsername":{"username":5}}',
        '{"GetPeers":{}}',
        '{"GetPeers":null,"SetUsername":{"username":"a"}}',
        "[1,2]",
        '{"Success":"ok"}',
    ],
)
def test_bad_commands_raise(text):
    with pytest.raises(ProtocolError):
        decode_command(text)


@pytest.mark.parametrize(
    "text",
    [
        '{"DaemonStatus":{"active_interface_name":"eth0"}}',
        '{"DaemonStatus":{"is_connected_to_network":"yes"}}',
        '{"PeerList":[{"id":"a","username":"b","port":70000}]}',
        '{"PeerList":[{"id":"a","username":"b","port":true}]}',
        '{"PeerList":{"id":"a"}}',
        '{"Error":3}',
        '"GetPeers"',
    ],
)
def test_bad_daemon_messages_raise(text):
    with pytest.raises(ProtocolError):
        decode_daemon_message(text)


def test_bad_message_timestamp_raises():
    data = json.loads(encode(_message()))
    data["timestamp"] = "yesterday"
    with pytest.raises(ProtocolError):
        decode_message(json.dumps(data))


def test_protocol_error_is_value_error():
    with pytest.raises(ValueError):
        decode_message("{}")


def test_encode_rejects_unknown_type():
    with pytest.raises(TypeError):
        encode(object())


def test_parse_timestamp_with_offset_is_same_instant():
    moment = parse_timestamp("2024-03-10T12:00:00+02:00")
    assert moment == datetime(2024, 3, 10, 12, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    assert moment.utcoffset() == timedelta(0)


def test_parse_timestamp_truncates_nanoseconds():
    assert parse_timestamp("2024-03-10T00:00:00.123456789Z").microsecond == 123456


@pytest.mark.parametrize("micros", [0, 1000, 123000, 5, 999999])
def test_timestamp_round_trip(micros):
    moment = datetime(2022, 12, 31, 23, 59, 59, micros, tzinfo=UTC)
    text = format_timestamp(moment)
    assert text.endswith("Z")
    assert parse_timestamp(text) == moment


def test_format_converts_to_utc():
    moment = datetime(2024, 1, 1, 1, 0, tzinfo=timezone(timedelta(hours=5)))
    assert parse_timestamp(format_timestamp(moment)) == moment


def test_naive_timestamp_treated_as_utc():
    naive = datetime(2024, 1, 1, 8, 15)
    assert parse_timestamp(format_timestamp(naive)) == naive.replace(tzinfo=UTC)


@pytest.mark.parametrize(
    "text",
    ["2024-13-01T00:00:00Z", "2024-01-01 00:00:00", "2024-01-01T00:00:00", "", "2024-01-01T00:00:00+25:00"],
)
def test_parse_timestamp_rejects_invalid(text):
    with pytest.raises(ProtocolError):
        parse_timestamp(text)