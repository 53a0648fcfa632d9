# merino

A small SOCKS5 proxy server (RFC 1928) built on asyncio. It supports the
`CONNECT` command over IPv4, IPv6 and domain-name addresses. Clients can be
let in without authentication, or asked for a username and password
(RFC 1929) that are checked against a CSV file.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Running the proxy

Allow clients in without authentication:

```
merino --no-auth
```

Require a username and password:

```
merino --users users.csv
```

Exactly one of `--no-auth` and `--users` must be given.

The users file is a CSV file whose header row is `username,password`:

```
username,password
alice,password
```

Nobody other than the file's owner should be able to read, write or execute
it. If others have any permission on the file, merino refuses to start unless
you pass `--allow-insecure`. It also refuses to start if the file cannot be
opened, a record is malformed, or no users are listed.

### Options

| Option | Default | Meaning |
|---|---|---|
| `-p`, `--port` | `1080` | Port to listen on |
| `-i`, `--ip` | `127.0.0.1` | Address to listen on |
| `--no-auth` | | Allow unauthenticated connections |
| `-u`, `--users` | | CSV file of username/password pairs |
| `--allow-insecure` | | Accept a users file that others can access |
| `-v` | | More log output; `-vv` logs even more |
| `-q` | | Print no log output, not even errors |
| `-V`, `--version` | | Print the version and exit |

`-v` and `-q` cannot be combined.

### Logging

Logs go to standard error. By default merino logs at INFO level; `-v` selects
DEBUG and `-vv` a finer TRACE level. If the `MERINO_LOG` environment variable
is set, it overrides `-v`: it holds either a level name (`trace`, `debug`,
`info`, `warn`, `error`, `off`) or a comma-separated filter such as
`merino=debug`. When the variable names no usable level, ERROR is used.
`-q` silences logging regardless of `MERINO_LOG`.

## Using it from Python

```python
import asyncio

from merino.protocol import AuthMethod
from merino.server import Merino


async def run() -> None:
    async with await Merino.create(
        1080, "127.0.0.1", [AuthMethod.NO_AUTH], [], None
    ) as server:
        await server.serve()


asyncio.run(run())
```

`Merino.create` binds the listening socket; `Merino.address` gives the bound
`(host, port)`, and `Merino.close` stops the server. The last argument is the
timeout in seconds for connecting to a target; `None` means half a second.

`merino.server.SocksClient` handles a single client connection over an
asyncio stream pair. `merino.protocol` has the wire-format pieces: request
parsing (`read_request`), reply building (`socks_reply`), the response codes
(`ResponseCode`) and address helpers (`pretty_print_addr`, `addr_to_socket`).
`merino.cli.load_users` reads a users file into a list of `User` objects.

## Limitations

Only `CONNECT` is supported. `BIND` and `UDP ASSOCIATE` requests get a
general failure reply. GSSAPI authentication is not offered.