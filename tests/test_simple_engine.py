import json
import socket
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from txmanager.config import (
    FIXED_GAS_PRICE,
    GAS_ORACLE_CONFIG,
    GAS_ORACLE_MODE,
    GAS_ORACLE_MODE_CONNECTOR,
    GAS_ORACLE_MODE_DISABLED,
    GAS_ORACLE_MODE_RESTAPI,
    GAS_ORACLE_TEMPLATE,
    HTTP_CONFIG_URL,
    RESUBMIT_INTERVAL,
    ConfigSection,
)
from txmanager.errors import TMError
from txmanager.policyengine import (
    ConnectorAPI,
    ConnectorError,
    ErrorReason,
    ManagedTX,
    UpdateType,
)
from txmanager.registry import base_config, new_policy_engine, register_engine, reset_registry
from txmanager.simple_engine import PolicyEngineFactory

SENDER = "0x6b7cfa4cf9709d3b3f5f7c22de123d2e16aee712"

GAS_STATION_BODY = b"""{
    "safeLow": {"maxPriorityFee":30.7611840636, "maxFee":30.7611840796},
    "standard": {"maxPriorityFee":32.146027800733336, "maxFee":32.14602781673334},
    "fast": {"maxPriorityFee":33.284344224133335, "maxFee":33.284344240133336},
    "estimatedBaseFee":1.6e-8,
    "blockTime":6,
    "blockNumber":24962816
}"""


class FakeConnector(ConnectorAPI):
    def __init__(self, tx_hash="0x12345", send_error=None, gas="", gas_error=None):
        self.tx_hash = tx_hash
        self.send_error = send_error
        self.gas = gas
        self.gas_error = gas_error
        self.sent = []
        self.gas_calls = 0

    def transaction_send(self, request):
        self.sent.append(request)
        if self.send_error:
            raise self.send_error
        return self.tx_hash

    def gas_price_estimate(self):
        self.gas_calls += 1
        if self.gas_error:
            raise self.gas_error
        return self.gas


@contextmanager
def serve(status, body, content_type=None):
    methods = []

    class Handler(BaseHTTPRequestHandler):
        def _reply(self):
            methods.append(self.command)
            self.send_response(status)
            if content_type:
                self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        do_GET = do_POST = _reply

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}", methods
    finally:
        server.shutdown()
        server.server_close()


def closed_url():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}"


def new_factory():
    conf = ConfigSection("unittest.simple")
    factory = PolicyEngineFactory()
    factory.init_config(conf)
    assert factory.name() == "simple"
    return factory, conf


def new_tx(**kwargs):
    kwargs.setdefault("sender", SENDER)
    kwargs.setdefault("transaction_data", "SOME_RAW_TX_BYTES")
    return ManagedTX(**kwargs)


def test_registry():
    reset_registry()
    register_engine(PolicyEngineFactory())
    base_config().sub_section("simple").set(FIXED_GAS_PRICE, "12345")
    assert new_policy_engine(base_config(), "simple").fixed_gas_price == "12345"
    with pytest.raises(TMError, match="FF21019"):
        new_policy_engine(base_config(), "bob")


def test_missing_gas_config():
    factory, conf = new_factory()
    conf.sub_section(GAS_ORACLE_CONFIG).set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_DISABLED)
    with pytest.raises(TMError, match="FF21020"):
        factory.new_policy_engine(conf)


def test_fixed_gas_price_ok():
    factory, conf = new_factory()
    conf.sub_section(GAS_ORACLE_CONFIG).set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_DISABLED)
    price = '{\n"maxPriorityFee":32.146027800733336,\n"maxFee":32.14602781673334\n}'
    conf.set(FIXED_GAS_PRICE, price)
    engine = factory.new_policy_engine(conf)
    mtx = new_tx(transaction_hash="0x12345")
    connector = FakeConnector()
    assert engine.execute(connector, mtx) is UpdateType.YES
    assert mtx.first_submit is not None and mtx.last_submit is not None
    assert mtx.gas_price == price
    (req,) = connector.sent
    sent_price = json.loads(req.gas_price)
    assert str(sent_price["maxPriorityFee"]) == "32.146027800733336"
    assert str(sent_price["maxFee"]) == "32.14602781673334"
    assert req.sender == SENDER and req.transaction_data == "SOME_RAW_TX_BYTES"


def test_gas_oracle_send_ok():
    factory, conf = new_factory()
    with serve(200, GAS_STATION_BODY, "application/json") as (url, methods):
        oracle = conf.sub_section(GAS_ORACLE_CONFIG)
        oracle.set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_RESTAPI)
        oracle.set(HTTP_CONFIG_URL, url)
        oracle.set(GAS_ORACLE_TEMPLATE, '{"unit":"gwei","value":{{ .standard.maxPriorityFee }}}')
        engine = factory.new_policy_engine(conf)
        mtx = new_tx(transaction_hash="0x12345")
        connector = FakeConnector()
        assert engine.execute(connector, mtx) is UpdateType.YES
        assert methods == ["GET"]
    assert mtx.first_submit is not None and mtx.last_submit is not None
    assert mtx.gas_price == '{"unit":"gwei","value":32.146027800733336}'
    assert json.loads(connector.sent[0].gas_price)["unit"] == "gwei"
    # cached after the server is gone
    assert engine.get_gas_price(connector) == mtx.gas_price


def test_connector_gas_oracle_send_ok():
    factory, conf = new_factory()
    conf.sub_section(GAS_ORACLE_CONFIG).set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_CONNECTOR)
    engine = factory.new_policy_engine(conf)
    mtx = new_tx(transaction_hash="0x12345")
    connector = FakeConnector(gas='"12345"')
    assert engine.execute(connector, mtx) is UpdateType.YES
    assert mtx.gas_price == '"12345"'
    assert mtx.first_submit is not None
    assert engine.get_gas_price(connector) == '"12345"'
    assert connector.gas_calls == 1


def test_connector_gas_oracle_fail():
    factory, conf = new_factory()
    conf.sub_section(GAS_ORACLE_CONFIG).set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_CONNECTOR)
    engine = factory.new_policy_engine(conf)
    connector = FakeConnector(gas_error=ConnectorError("pop"))
    with pytest.raises(ConnectorError, match="pop") as info:
        engine.execute(connector, new_tx(transaction_hash="0x12345"))
    assert info.value.reason is ErrorReason.NONE
    assert info.value.update is UpdateType.NO


def test_gas_oracle_send_fail():
    factory, conf = new_factory()
    with serve(404, b"Not the gas station you are looking for") as (url, _):
        oracle = conf.sub_section(GAS_ORACLE_CONFIG)
        oracle.set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_RESTAPI)
        oracle.set(GAS_ORACLE_TEMPLATE, "{{ . }}")
        oracle.set(HTTP_CONFIG_URL, url)
        engine = factory.new_policy_engine(conf)
        with pytest.raises(TMError, match="FF21021"):
            engine.execute(FakeConnector(), new_tx())


def test_gas_oracle_missing_template():
    factory, conf = new_factory()
    oracle = conf.sub_section(GAS_ORACLE_CONFIG)
    oracle.set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_RESTAPI)
    oracle.set(HTTP_CONFIG_URL, closed_url())
    with pytest.raises(TMError, match="FF21024"):
        factory.new_policy_engine(conf)


def test_gas_oracle_bad_template():
    factory, conf = new_factory()
    oracle = conf.sub_section(GAS_ORACLE_CONFIG)
    oracle.set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_RESTAPI)
    oracle.set(GAS_ORACLE_TEMPLATE, "{{ !!! wrong")
    oracle.set(HTTP_CONFIG_URL, closed_url())
    with pytest.raises(TMError, match="FF21025"):
        factory.new_policy_engine(conf)


def test_gas_oracle_template_execute_fail():
    factory, conf = new_factory()
    with serve(200, b"{}", "application/json") as (url, _):
        oracle = conf.sub_section(GAS_ORACLE_CONFIG)
        oracle.set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_RESTAPI)
        oracle.set(GAS_ORACLE_TEMPLATE, "{{ .wrong.thing | len }}")
        oracle.set(HTTP_CONFIG_URL, url)
        engine = factory.new_policy_engine(conf)
        with pytest.raises(TMError, match="FF21026"):
            engine.execute(FakeConnector(), new_tx())


def test_gas_oracle_unreachable():
    factory, conf = new_factory()
    oracle = conf.sub_section(GAS_ORACLE_CONFIG)
    oracle.set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_RESTAPI)
    oracle.set(GAS_ORACLE_TEMPLATE, "{{ . }}")
    oracle.set(HTTP_CONFIG_URL, closed_url())
    engine = factory.new_policy_engine(conf)
    with pytest.raises(TMError, match="FF21021"):
        engine.execute(FakeConnector(), new_tx())


def test_tx_send_fail():
    factory, conf = new_factory()
    with serve(200, b"{}") as (url, _):
        oracle = conf.sub_section(GAS_ORACLE_CONFIG)
        oracle.set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_RESTAPI)
        oracle.set(GAS_ORACLE_TEMPLATE, "{{ . }}")
        oracle.set(HTTP_CONFIG_URL, url)
        engine = factory.new_policy_engine(conf)
        connector = FakeConnector(send_error=ConnectorError("pop", ErrorReason.INVALID_INPUTS))
        with pytest.raises(ConnectorError, match="pop") as info:
            engine.execute(connector, new_tx())
    assert info.value.update is UpdateType.YES
    assert info.value.reason is ErrorReason.INVALID_INPUTS


def test_warn_stale_warning_cannot_parse():
    factory, conf = new_factory()
    conf.set(FIXED_GAS_PRICE, "12345")
    engine = factory.new_policy_engine(conf)
    mtx = new_tx(
        first_submit=datetime.now(timezone.utc) - timedelta(hours=100),
        policy_info="!not json!",
    )
    connector = FakeConnector(
        send_error=ConnectorError("Known transaction", ErrorReason.KNOWN_TRANSACTION))
    assert engine.execute(connector, mtx) is UpdateType.YES
    assert json.loads(mtx.policy_info)["lastWarnTime"]
    assert len(connector.sent) == 1


def test_known_transaction_hash_known():
    factory, conf = new_factory()
    conf.set(FIXED_GAS_PRICE, "12345")
    conf.sub_section(GAS_ORACLE_CONFIG).set(GAS_ORACLE_MODE, GAS_ORACLE_MODE_DISABLED)
    engine = factory.new_policy_engine(conf)
    mtx = new_tx(policy_info="!not json!", transaction_hash="0x01020304")
    connector = FakeConnector(
        send_error=ConnectorError("Known transaction", ErrorReason.KNOWN_TRANSACTION))
    assert engine.execute(connector, mtx) is UpdateType.YES
    assert len(connector.sent) == 1


def test_warn_stale_additional_warning_resubmit_fail():
    factory, conf = new_factory()
    conf.set(FIXED_GAS_PRICE, "12345")
    engine = factory.new_policy_engine(conf)
    now = datetime.now(timezone.utc)
    last_warning = (now - timedelta(hours=50)).isoformat()
    mtx = new_tx(
        first_submit=now - timedelta(hours=100),
        policy_info=json.dumps({"lastWarnTime": last_warning}),
    )
    connector = FakeConnector(send_error=ConnectorError("pop"))
    with pytest.raises(ConnectorError, match="pop") as info:
        engine.execute(connector, mtx)
    assert info.value.reason is ErrorReason.NONE
    assert info.value.update is UpdateType.YES
    new_warn = json.loads(mtx.policy_info)["lastWarnTime"]
    assert new_warn and new_warn != last_warning


def test_warn_stale_no_warning():
    factory, conf = new_factory()
    conf.set(FIXED_GAS_PRICE, "12345")
    conf.set(RESUBMIT_INTERVAL, "100s")
    engine = factory.new_policy_engine(conf)
    now = datetime.now(timezone.utc)
    mtx = new_tx(
        first_submit=now - timedelta(hours=100),
        policy_info=json.dumps({"lastWarnTime": now.isoformat()}),
    )
    connector = FakeConnector()
    assert engine.execute(connector, mtx) is UpdateType.NO
    assert connector.sent == []


def test_no_op_with_receipt():
    factory, conf = new_factory()
    conf.set(FIXED_GAS_PRICE, "12345")
    conf.set(RESUBMIT_INTERVAL, "100s")
    engine = factory.new_policy_engine(conf)
    mtx = new_tx(
        first_submit=datetime.now(timezone.utc),
        receipt={"blockHash": "0x39e2664effa5ad0651c35f1fe3b4c4b90492b1955fee731c2e9fb4d6518de114"},
    )
    connector = FakeConnector()
    assert engine.execute(connector, mtx) is UpdateType.NO
    assert connector.sent == []


def test_allows_delete_request():
    factory, conf = new_factory()
    conf.set(FIXED_GAS_PRICE, "12345")
    conf.set(RESUBMIT_INTERVAL, "100s")
    engine = factory.new_policy_engine(conf)
    connector = FakeConnector()
    mtx = ManagedTX(delete_requested=datetime.now(timezone.utc))
    assert engine.execute(connector, mtx) is UpdateType.DELETE
    assert connector.sent == []