# anytls

anytls is a proxy protocol that carries many streams over one TLS
connection. It shapes the sizes of the first packets of each connection
with a configurable padding scheme. This package, built on asyncio, holds
the protocol's building blocks, a pooling session client, a proxy client
and a ready-to-run server.

## Installation

```
pip install .
```

To run the test suite, install the test extra and run pytest:

```
pip install ".[test]"
pytest
```

## Running the server

```
anytls-server -l 0.0.0.0:8443 -p password
```

Options:

- `-l` is the address and port to listen on. The default is `0.0.0.0:8443`.
- `-p` is the shared password. It is required. Without it the server stops
  with exit status 1.
- `--padding-scheme` is a file with a custom padding scheme. If the file
  cannot be read, the server stops. If it does not parse, an error is logged
  and the built-in default stays in use.

At start-up the server makes a self-signed RSA-2048 certificate. The
certificate is valid from one hour before start-up to one hour after it.
The `LOG_LEVEL` environment variable sets how much is logged. It takes
`panic`, `fatal`, `error`, `warn`, `warning`, `info`, `debug` or `trace`.
The default is `info`.

## How a connection works

1. Over a TLS connection, the client first sends the SHA-256 digest of the
   password. Next comes a two-byte big-endian padding length, then that many
   zero bytes. The padding length comes from line `0` of the padding scheme.
2. After that, both sides exchange frames. Each frame has a 7-byte header
   (command, stream id, data length) and then its data. See `Command`,
   `Frame` and `FrameHeader` in `anytls.frame`.
3. The client sends its settings: protocol version `2`, its name
   (`anytls/0.0.12`) and the MD5 of its padding scheme. If the server's
   scheme has a different MD5, the server sends its own scheme, and the
   client installs it. A client that reports version 2 or later gets the
   server's settings back.
4. Each proxied connection is a `Stream` inside a `Session`. The first thing
   written on a stream is the destination address (`Socksaddr`). After that,
   data flows both ways. With a version 2 peer, the server reports whether
   its outbound connection opened (`Stream.handshake_success` and
   `Stream.handshake_failure`). If the report does not arrive within three
   seconds, the client closes the session.
5. Heartbeat requests are answered with heartbeat responses.

## Padding schemes

A padding scheme is a set of `key=value` lines. `stop` is the number of
packets to shape. Each numbered line lists the record sizes for that packet.
A size is written as `min-max`. A `c` in the list is a check point: if no
payload is left there, the rest of the line is skipped. The default scheme
is:

```
stop=8
0=30-30
1=100-400
2=400-500,c,500-1000,c,500-1000,c,500-1000,c,500-1000
3=9-9,500-1000
4=500-1000
5=500-1000
6=500-1000
7=500-1000
```

`PaddingFactory(raw)` parses a scheme. It raises `ValueError` if the scheme
is empty or has no valid `stop`. `generate_record_payload_sizes(pkt)` turns
one line into concrete sizes, with `CHECK_MARK` (-1) marking check points.
`update_padding_scheme(raw, holder)` installs a new scheme into a
`PaddingHolder`, or into `DEFAULT_PADDING` if no holder is given. It returns
`False` and changes nothing if the scheme does not parse.

## Using the library

The key-value format used for settings and padding schemes:

```python
from anytls.stringmap import string_map_from_bytes, string_map_to_bytes

data = string_map_to_bytes({"v": "2"})
assert string_map_from_bytes(data) == {"v": "2"}
```

A certificate and server context for a TLS listener. `now` is a callable
that returns the current time, or `None` for the current UTC time:

```python
from anytls.certs import generate_key_pair

pair = generate_key_pair(None, "localhost")
context = pair.server_ssl_context()
```

Running the server from code:

```python
import asyncio
from anytls.server import ProxyServer

password = "password"
server = ProxyServer(password, context)
asyncio.run(server.serve("0.0.0.0", 8443))
```

Opening a proxied stream from a client. The dial function opens the
connection, TLS included, and returns an asyncio reader and writer:

```python
import asyncio
import ssl

from anytls.addressing import Socksaddr
from anytls.client import ProxyClient


async def dial():
    tls = ssl.create_default_context()
    tls.check_hostname = False
    tls.verify_mode = ssl.CERT_NONE
    return await asyncio.open_connection("localhost", 8443, ssl=tls)


async def fetch():
    password = "password"
    client = ProxyClient(dial, password=password)
    stream = await client.create_proxy(Socksaddr("example.com", 80))
    await stream.write(b"GET / HTTP/1.0\r\nHost: example.com\r\n\r\n")
    print(await stream.read(4096))
    await stream.close()
    client.close()


asyncio.run(fetch())
```

Other parts:

- `SessionClient.create_stream` reuses the newest idle session, or dials a
  new one. When a stream closes, its session goes back to the idle pool.
  Every 30 seconds, sessions idle longer than the timeout are closed, but
  `min_idle_session` of them are kept. `cleanup_idle(expire_before)` does
  the same on demand.
- `Stream` has `read`, `write`, `close` and read/write deadlines, given as
  `time.monotonic()` values.
- `anytls.pipe.pipe()` returns a synchronous in-memory reader/writer pair
  with deadlines. `anytls.timers` has `PipeDeadline`,
  `new_deadline_watcher` and `start_routine`.
- `anytls.addressing` has `Socksaddr`, `read_socksaddr` and `dial_tcp`.
  `dial_tcp` gives up after 5 seconds by default.

## What this package does not do

- There is no client command. Nor is there a local SOCKS or HTTP listener
  that feeds connections into `ProxyClient`; you must wire one up yourself.
- The server only relays TCP. If a stream asks for a UDP-over-TCP
  destination, that stream is closed.
- A connection with a wrong password gets no fallback service. The server
  logs it and closes the connection.
- The server's certificate is self-signed and made at start-up. Loading a
  certificate from files is not supported.