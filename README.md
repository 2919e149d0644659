# txmanager

Building blocks for a blockchain transaction manager:

- **Policy engines** (`txmanager.policyengine`, `txmanager.simple_engine`)
  decide what happens to each managed transaction: submit it, resubmit it
  when it has gone stale, or delete it. The `simple` engine gets its gas price
  from a fixed value, from the connector, or from a REST gas oracle whose JSON
  reply is reshaped by a small template (`txmanager.gotemplate`).
- **Event stream management** (`txmanager.streams`) keeps runtime streams,
  their listeners and a store in step. Stream names stay unique, and a failed
  write is undone.
- **Transaction queries** (`txmanager.transactions`) list stored transactions
  by creation time, by signer nonce, or pending only, in either direction.

The package has no third-party dependencies.

## Installation

```
pip install .
```

To run the tests as well:

```
pip install ".[test]"
pytest
```

## Choosing a policy engine

Engines are registered by factory in `txmanager.registry`:

```python
from txmanager.registry import base_config, register_engine, new_policy_engine
from txmanager.simple_engine import PolicyEngineFactory

register_engine(PolicyEngineFactory())

conf = base_config().sub_section("simple")
conf.set("fixedGasPrice", "12345")
conf.sub_section("gasOracle").set("mode", "disabled")

engine = new_policy_engine(base_config(), "simple")
```

`register_engine` registers the factory's configuration keys under a
sub-section named after the engine. An unknown engine name raises `TMError`
with code `ErrorCode.POLICY_ENGINE_NOT_REGISTERED` (`FF21019`).
`reset_registry()` forgets all engines and starts a fresh base configuration.

## Running a transaction through the engine

Write a connector by subclassing `txmanager.policyengine.ConnectorAPI` and
implementing `transaction_send(request)` (returns the transaction hash) and
`gas_price_estimate()` (returns the gas price as raw JSON). Then pass each
`ManagedTX` to the engine:

```python
from txmanager.policyengine import ConnectorError, ManagedTX, UpdateType

mtx = ManagedTX(sender="0xabc", transaction_data="SOME_RAW_TX_BYTES")
try:
    update = engine.execute(connector, mtx)
except ConnectorError as err:
    update = err.update   # UpdateType.YES if mtx must still be persisted
    reason = err.reason   # an ErrorReason
if update is UpdateType.YES:
    ...  # persist mtx
elif update is UpdateType.DELETE:
    ...  # remove it from storage
```

What the simple engine does:

- a transaction with `delete_requested` set returns `UpdateType.DELETE`;
- a transaction never submitted gets a gas price and is submitted once;
  `first_submit`, `last_submit` and `transaction_hash` are filled in;
- a submitted transaction with no `receipt` is resubmitted, and a warning is
  logged, once `resubmitInterval` has passed since the last warning; the
  warning time is kept in `policy_info` as `{"lastWarnTime": ...}`;
- a transaction with a receipt is left alone (`UpdateType.NO`).

A `known_transaction` or `nonce_too_low` failure is treated as success when
the transaction already has a hash. Configuration and gas oracle problems are
raised as `TMError`; the gas price from the connector or the oracle is cached
for `gasOracle.queryInterval`.

### Simple engine settings

| key                       | default     | meaning                                               |
|---------------------------|-------------|-------------------------------------------------------|
| `fixedGasPrice`           | —           | raw JSON gas price, used when the oracle is disabled  |
| `resubmitInterval`        | `5m`        | how long to wait before warning and resubmitting      |
| `gasOracle.mode`          | `connector` | `connector`, `restapi` or `disabled`                  |
| `gasOracle.method`        | `GET`       | HTTP method used for the REST oracle                  |
| `gasOracle.url`           | —           | REST oracle endpoint                                  |
| `gasOracle.template`      | —           | template that maps the oracle reply to a gas price    |
| `gasOracle.queryInterval` | `5m`        | how long an oracle answer is cached                   |

Durations are parsed by `txmanager.config.parse_duration` (`250ms`, `100s`,
`1h30m`, ...). With mode `restapi` a template is required; with mode
`disabled` a `fixedGasPrice` is required.

### Templates

`txmanager.gotemplate.Template` supports field paths (`{{ .standard.maxFee }}`),
`{{ . }}`, string, number and boolean constants, pipelines with the `len` and
`print` functions, `{{/* comments */}}` and `{{-`/`-}}` whitespace trimming.
For example `{"unit":"gwei","value":{{ .standard.maxPriorityFee }}}`. Parse
and execution failures raise `TemplateError`.

## Managing event streams

`StreamManager(persistence, connector, stream_factory)` works with a store
that follows the `Persistence` protocol, a connector, and a callable
`stream_factory(definition, connector, persistence, listeners)` returning a
runtime `Stream`. Its methods create, update, restore (`restore_streams`) and
delete streams and listeners, and list them page by page. Ids are checked with
`parse_uuid`, page sizes with `parse_limit`, and a listener's legacy
`eth_compat_methods` are folded into its options by
`merge_eth_compat_methods`.

## Querying transactions

```python
from txmanager.transactions import get_transaction_by_id, get_transactions

txs = get_transactions(persistence, "", "25", "", True, "asc")
tx = get_transaction_by_id(persistence, "tx-1")
```

A signer cannot be given together with `pending`. The sort direction may be
`asc`, `ascending`, `desc`, `descending`, or empty, which means descending.

## What the package does not provide

- No storage: `Persistence` is only a protocol, to be implemented by the caller.
- No runtime event stream: `Stream` is abstract, and the caller's
  `stream_factory` supplies the implementation.
- No blockchain connector: `ConnectorAPI` must be implemented by the caller.
- No HTTP API server and no command-line program.