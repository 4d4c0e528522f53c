# siptx

A SIP transaction layer following RFC 3261, section 17, built on threads and
`queue.Queue` channels. It has no dependencies beyond the standard library.

## Modules

- `siptx.message`: SIP requests and responses as Python objects
  (`Request`, `Response`) with the headers the transaction layer works with
  (`ViaHeader`/`ViaHop`, `CSeqHeader`, `AddressHeader`, `RouteHeader`,
  `GenericHeader`, `Params`, `SipUri`), the abstract `Transport` base class,
  and helpers: `new_ack_request`, `new_cancel_request`,
  `new_response_from_request`, `copy_headers`, `copy_request`,
  `copy_response`, `generate_branch`, `default_port`, `next_message_id`.
- `siptx.transaction`: transaction keys (`make_client_tx_key`,
  `make_server_tx_key`, raising `TxKeyError` when a message cannot be keyed),
  the RFC 3261 timer values in seconds (`T1`, `T2`, `T4`, `TIMER_A` …
  `TIMER_M`, `TIMER_1XX`), the errors `TxError`, `TxTimeoutError`,
  `TxTransportError` and `TxTerminatedError`, the `StateMachine` driving the
  transactions and the `CommonTx` base class.
- `siptx.client_tx`: `ClientTx`, the INVITE and non-INVITE client transaction,
  and `prepare_client_request`, which gives a request's top Via a branch.
  Matched responses appear in `ClientTx.responses`; `cancel()` sends a CANCEL
  for an INVITE; an ACK is sent automatically for non-2xx final responses.
- `siptx.server_tx`: `ServerTx`, the INVITE and non-INVITE server transaction.
  It sends `100 Trying` on its own 200 ms after an INVITE arrives unless the
  user responds first; ACKs and CANCELs matched to it appear in `acks` and
  `cancels`.
- `siptx.layer`: `Layer`, which reads the transport's incoming messages,
  matches them to transactions, opens a `ServerTx` for each new request
  (delivered through `Layer.requests`), passes up ACKs for 2xx responses
  (`Layer.acks`) and responses matched to no transaction (`Layer.responses`),
  and answers an unmatched CANCEL with `481 Transaction Does Not Exist`.
- `siptx.timing`: timers running on the system clock or, in mock mode, on a
  clock that only moves when `elapse()` is called.
- `siptx.mock_transport`: `MockTransportLayer`, an in-memory `Transport`
  whose incoming traffic is put into `in_msgs` and whose sent messages appear
  in `out_msgs`.

Every queue that a transaction or the layer hands out receives `None` once it
is finished; `done` is a `threading.Event` set at the same time.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Usage

```python
from siptx.layer import Layer
from siptx.message import (
    CSeqHeader, Params, Request, RequestMethod, SipUri, ViaHeader, ViaHop,
    generate_branch,
)
from siptx.mock_transport import MockTransportLayer

transport = MockTransportLayer()
layer = Layer(transport)

invite = Request(
    RequestMethod.INVITE,
    SipUri(host="example.com", user="bob"),
    headers=[
        ViaHeader([ViaHop(host="localhost", port=9001,
                          params=Params().add("branch", generate_branch()))]),
        CSeqHeader(1, RequestMethod.INVITE),
    ],
)

tx = layer.request(invite)          # a ClientTx; the INVITE is now in transport.out_msgs
sent = transport.out_msgs.get()

# Responses put into transport.in_msgs are matched to tx and show up here:
# response = tx.responses.get()

layer.cancel()
layer.done.wait()
```

Answering an incoming request goes through its server transaction:

```python
server_tx = layer.requests.get()    # a ServerTx for a new incoming request
layer.respond(response)             # response built e.g. with new_response_from_request
```

### Deterministic timers

```python
from siptx import timing

timing.set_mock_mode(True)
fired = []
timing.after_func(5.0, lambda: fired.append(True))
timing.elapse(5.0)                  # the callback is started now, in its own thread
```

Durations are given in seconds or as `datetime.timedelta`. `elapse()` raises
`RuntimeError` unless mock mode is on.

## What it does not do

- It does not parse SIP text: messages are built from the classes in
  `siptx.message`, and `str()` of a message renders it.
- It has no network transport. `MockTransportLayer` is the only `Transport`
  included; a UDP, TCP, TLS or WebSocket transport has to be supplied by
  subclassing `siptx.message.Transport`.
- There is no dialog or user-agent layer and no command-line program.