# localchat

Building blocks for a chat between people on the same local network, with
no server in between: a line-oriented JSON wire protocol, the user identity
a chat node announces, peer discovery over multicast DNS, the state of a
chat window, and two Tkinter widgets that draw it.

## Installing

```
pip install .
```

The widgets in `localchat.chat_area` and `localchat.sidemenu` use Tkinter,
which ships with most Python builds; it is imported only when a widget is
created.

## What is here

### `localchat.protocol`: the wire format

Every frame is one JSON document on its own line. Commands from a chat
window (`GetPeers`, `SendMessage`, `RequestHistory`, `SetUsername`,
`ClearDaemonPeerCache`) and replies and events sent back to it
(`DaemonStatus`, `PeerList`, `NewMessage`, `HistoryResponse`,
`ErrorMessage`, `IdentityInfo`, `Success`) are externally tagged: a variant
without data is a bare string such as `"GetPeers"`, one with data is a
one-key object such as `{"SetUsername": {"username": "Alice"}}`. Peers send
each other a bare `Message` object. Timestamps are RFC 3339 UTC strings
(`format_timestamp`, `parse_timestamp`).

```python
from localchat.protocol import SendMessage, encode, decode_command

line = encode(SendMessage(recipient_id="Bob - x9Y8z7W6", content="hi"))
assert decode_command(line) == SendMessage(recipient_id="Bob - x9Y8z7W6", content="hi")
```

`encode` turns a command, reply, `Message` or `IpcPeer` into a line without
the trailing newline; `decode_command`, `decode_daemon_message` and
`decode_message` read one back and raise `ProtocolError` (a `ValueError`)
for anything malformed.

### `localchat.identity`: who the user is

```python
from localchat.identity import make_identity, display_name

me = make_identity("Alice", "a1B2c3D4")
assert me.full_message_id == "Alice - a1B2c3D4"
assert me.m_dns_instance_name == "Alice_a1B2c3D4"
assert display_name(me.full_message_id) == "Alice"
```

Without a suffix, `make_identity` draws eight random letters and digits
(`random_suffix`). `sanitize_mdns_name` keeps only the alphanumeric
characters of a name and falls back to `LocalChat`.

`DaemonConfig.from_env()` reads `LOCALCHAT_TCP_PORT` (default `12345`) and
`LOCALCHAT_SOCKET_PATH` (default `/tmp/localchat_daemon.sock`), using the
default for a missing or invalid value. An identity is kept in
`/tmp/localchat_daemon_identity_<N>.json`, where `N` is made up of the
digits of the socket path, `0` if there are none (`identity_file_path`,
`instance_number`); `save_identity` and `load_identity` write and read it,
and `load_identity` returns `None` for a missing or unusable file.

### `localchat.discovery`: finding peers

`ServiceRecord` describes one advertised chat service of type
`_localchat._tcp.local.`. `build_announcement` encodes it as an mDNS
response (PTR, SRV, TXT and address records) and `parse_announcement`
reads the chat services back out of a packet:

```python
from localchat.discovery import (
    ServiceRecord, build_announcement, parse_announcement, service_fullname,
)

record = ServiceRecord(
    fullname=service_fullname("Bob_x9Y8z7W6"),
    hostname="eth0.local.",
    addresses=("192.168.1.20",),
    port=12345,
    properties={"username": "Bob", "full_id": "Bob - x9Y8z7W6"},
)
found = parse_announcement(build_announcement(record))
assert found[0].port == 12345
```

`PeerRegistry` keeps the discovered peers, keyed by the `full_id` TXT
property: `resolved` stores a peer (skipping one's own service and services
with no non-loopback IPv4 address), `removed` forgets the peer matching a
withdrawn service, and `clear`, `get` and `peers` do what they say.

`MdnsService(registry)` is an asyncio datagram protocol on UDP port 5353 of
the group `224.0.0.251`. `await service.start()` joins the group and asks
for peers; `await service.register(identity, port)` announces the identity
on the first non-loopback IPv4 address (`local_ipv4_interface`) and answers
later queries for it; `service.close()` withdraws the announcement. Every
announcement it hears updates the registry.

### `localchat.state`: the chat window's state

`ChatState(username_file)` holds the messages, peers, selected peer,
current user id, status line and the flags for the username prompt and the
loading screen. It loads a saved username from `username_file`
(`load_username`). Its methods return the commands to send as a result:

- `startup_commands()`: `SetUsername` for a saved username, if any.
- `handle(message)`: applies a reply or event; an `IdentityInfo` also asks
  once for `GetPeers`. New messages from others are appended (duplicates
  and echoes of one's own messages are dropped) and queued in
  `notifications` as `(summary, body)` pairs.
- `submit_username(name)`, `update_username(name)`: save the name and send
  `SetUsername`.
- `compose(text)`: shows the text locally and sends `SendMessage` to the
  selected peer.
- `select_peer(peer_id)`, `delete_username()`, `clear_peers()`.

`Panel` names the three views: `CHAT`, `HISTORY` and `SETTINGS`.

### `localchat.chat_area` and `localchat.sidemenu`: widgets

`ChatArea(master, on_send)` is a Tk frame with message bubbles grouped by
day under `Today`, `Yesterday` or the full date, and an input line;
`render(messages)` redraws it. Its helpers `date_label`, `bubble_width` and
`group_by_day` work without a display.

`SideMenu(master, on_select, on_refresh)` lists peers with a refresh button;
`render(peers, selected)` redraws it. Clicking a peer calls `on_select`
with `toggle_selection(selected, peer_id)`: clicking the selected peer
again deselects it.

## What it does not do

This package has no program to run. There is no daemon that listens on the
Unix socket and the TCP port and delivers messages between peers, no client
that connects a window to such a daemon, and no command that opens a chat
window; the pieces above are what such programs are built from. Message
history is not stored anywhere.

## Running the tests

```
pip install ".[test]"
pytest
```