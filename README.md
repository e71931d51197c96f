# seesaw

Healthchecks for load-balanced backends, plus a data model for Linux IPVS
services and destinations.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Healthcheckers

A checker probes one target. It returns a `Result` (from
`seesaw.healthcheck.core`) with these fields:

- `success`
- `message`
- `duration` in seconds
- `error`, the exception if there was one

`str(result)` gives the error if there is one, and the message otherwise.

Every checker is a dataclass built on `Target`. The target fields are:

- `ip`
- `host`
- `mark`
- `mode` (`HealthcheckMode.PLAIN`, `DSR` or `TUN`)
- `port`
- `proto`

Pass `port` and the checker's own options as keywords. If a checker's
`check(timeout)` gets a timeout of zero, it uses that checker's default.

| Checker | Module | What it checks | Default timeout |
|---------|--------|----------------|-----------------|
| `TCPChecker` | `seesaw.healthcheck.tcp` | TCP connect, optional TLS (`secure`, `tls_verify`), optional `send` / `receive` exchange | 10 s |
| `UDPChecker` | `seesaw.healthcheck.udp` | sends `send`, compares the reply with `receive` | 5 s |
| `HTTPChecker` | `seesaw.healthcheck.http` | `method` request for `request`; checks `response_code` (0 accepts any) and that the body starts with `response`; redirects are not followed | 5 s |
| `DNSChecker` | `seesaw.healthcheck.dns` | UDP query for `query_name` / `query_class` / `query_type`; succeeds when an A or AAAA answer equals `answer` | 3 s |
| `PingChecker` | `seesaw.healthcheck.ping` | ICMP or ICMPv6 echo; needs raw-socket privileges | 1 s |
| `RADIUSChecker` | `seesaw.healthcheck.radius` | Access-Request using `username`, `password` and `secret`; checks the response authenticator and that the reply type matches `response` (`accept`, `challenge`, `reject` or `any`) | 3 s |

`dns_type(name)` in `seesaw.healthcheck.dns` turns a record type name such as
`"aaaa"` into its number. It raises `ValueError` for unknown names.

### A single check

```python
from ipaddress import ip_address
from seesaw.healthcheck.tcp import TCPChecker

checker = TCPChecker(ip_address("127.0.0.1"), port=8080, send="PING\n", receive="PONG")
result = checker.check(1.0)
print(result.success, result)
```

### Marked sockets

In DSR and TUN modes, `mark` is set on the socket as `SO_MARK`. Setting it
usually requires `CAP_NET_ADMIN`. The helpers behind this are in
`seesaw.healthcheck.dial`:

- `dial_tcp`
- `dial_udp`
- `set_socket_mark`
- `set_socket_timeout`

### Scheduled checks

`Check` in `seesaw.healthcheck.check` runs a checker at an interval. It takes
its settings from a `Config` in `seesaw.healthcheck.core`:

- `id`
- `checker`
- `interval`, default 5 s
- `timeout`, default 30 s
- `retries`, default 0

A check that runs past its timeout counts as a failure, with the message
`Timed out`. The `State` of a check moves between `UNKNOWN`, `UNHEALTHY` and
`HEALTHY`. Once healthy, a check stays healthy until it fails `retries + 1`
times in a row. Each change of state puts a `Notification` on the notify queue.
`status()` returns a `Status` snapshot with these fields:

- `last_check`
- `duration`
- `failures`
- `successes`
- `state`
- `message`

```python
import queue
import threading
from seesaw.healthcheck.check import Check
from seesaw.healthcheck.core import Config

notifications = queue.Queue()
check = Check(notifications)
threading.Thread(target=check.run, args=(None,), daemon=True).start()
check.update(Config(1, checker, interval=2.0, timeout=1.0))
...
check.stop()
print(check.status())
```

The behaviour of `update` depends on the mode:

- Default (non-blocking): if an earlier update has not been picked up yet, the
  new one is dropped with a warning.
- After `set_blocking(True)`: `update` waits until the running check has taken
  the configuration.

`set_dryrun(True)` turns on dry-run mode, in which every check succeeds.

### Server

`Server(engine, config)` runs many checks at once. `engine` is your own
subclass of `Engine`, which implements two methods:

- `healthchecks()` returns the current `Config`s, keyed by id. The server
  fetches them every `fetch_interval`, starts and stops checks to match, and
  passes each check its configuration.
- `health_state(notifications)` receives notifications. They are delivered in
  batches of up to `batch_size`, or after `batch_delay`. Every check's status
  is also sent every `notify_interval`. A failed delivery is retried every
  `retry_delay`. After `max_failures` failures, `run()` raises `RuntimeError`.

The settings come from `ServerConfig`; `default_server_config()` returns the
defaults. `shutdown()` stops a running server.

## RADIUS and ICMP helpers

`seesaw.healthcheck.radius` provides:

- `RadiusPacket` and `RadiusAttribute`, with `encode()` and `decode()`
- `RadiusCode` and `AttributeType`
- `radius_password`, which hides a password as in RFC 2865 section 5.2
- `response_authenticator`
- `new_authenticator` and `new_identifier`

A malformed packet raises `RadiusError`.

`seesaw.healthcheck.ping` provides:

- `new_echo_request`
- `icmp_checksum`
- `parse_echo_reply`
- `exchange_echo`

## IPVS model

`seesaw.ipvs` describes IPVS:

- `Service` and `Destination`, each with an `equal()` comparison of
  configuration
- `ServiceStats`, `DestinationStats` and `Stats`
- `ServiceFlags` and `DestinationFlags`
- `IPProto`
- `IPVSVersion`; its `from_int` decodes a kernel version number

`new_ipvs_service` and `new_ipvs_destination` convert to the kernel-side
`IPVSService` and `IPVSDestination`. `to_service()` and `to_destination()`
convert back. `ServiceFlags.to_bytes()` and `from_bytes()` give the netlink
form of the flags.

## What this package does not do

- It does not talk to the kernel. There is no netlink code, so it cannot add,
  read or delete IPVS services itself.
- It provides no command-line program.
- It does not include an engine for `Server`. You supply the `Engine`
  implementation.