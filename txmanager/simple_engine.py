"""A simple policy engine: submit once, warn and resubmit when a transaction is stale."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from txmanager.config import (
    FIXED_GAS_PRICE,
    GAS_ORACLE_CONFIG,
    GAS_ORACLE_METHOD,
    GAS_ORACLE_MODE,
    GAS_ORACLE_MODE_CONNECTOR,
    GAS_ORACLE_MODE_RESTAPI,
    GAS_ORACLE_QUERY_INTERVAL,
    GAS_ORACLE_TEMPLATE,
    HTTP_CONFIG_URL,
    RESUBMIT_INTERVAL,
    ConfigSection,
    init_simple_config,
)
from txmanager.errors import ErrorCode, TMError
from txmanager.gotemplate import Template, TemplateError
from txmanager.policyengine import (
    ConnectorAPI,
    ConnectorError,
    ErrorReason,
    ManagedTX,
    PolicyEngine,
    TransactionSendRequest,
    UpdateType,
)
from txmanager.registry import Factory

log = logging.getLogger(__name__)

_HTTP_TIMEOUT = 30


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(text: str) -> datetime:
    value = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PolicyEngineFactory(Factory):
    """Factory for the simple policy engine."""

    def name(self) -> str:
        return "simple"

    def init_config(self, conf: ConfigSection) -> None:
        init_simple_config(conf)

    def new_policy_engine(self, conf: ConfigSection) -> "SimplePolicyEngine":
        gas_oracle = conf.sub_section(GAS_ORACLE_CONFIG)
        engine = SimplePolicyEngine(
            fixed_gas_price=conf.get_string(FIXED_GAS_PRICE) or None,
            resubmit_interval=conf.get_duration(RESUBMIT_INTERVAL),
            gas_oracle_mode=gas_oracle.get_string(GAS_ORACLE_MODE),
            gas_oracle_method=gas_oracle.get_string(GAS_ORACLE_METHOD),
            gas_oracle_query_interval=gas_oracle.get_duration(GAS_ORACLE_QUERY_INTERVAL),
        )
        if engine.gas_oracle_mode == GAS_ORACLE_MODE_RESTAPI:
            engine.gas_oracle_url = gas_oracle.get_string(HTTP_CONFIG_URL)
            source = gas_oracle.get_string(GAS_ORACLE_TEMPLATE)
            if not source:
                raise TMError(ErrorCode.MISSING_GAS_ORACLE_TEMPLATE)
            try:
                engine.gas_oracle_template = Template(source)
            except TemplateError as err:
                raise TMError(ErrorCode.BAD_GAS_ORACLE_TEMPLATE, err) from err
        elif engine.gas_oracle_mode != GAS_ORACLE_MODE_CONNECTOR and engine.fixed_gas_price is None:
            raise TMError(ErrorCode.NO_GAS_CONFIG)
        return engine


@dataclass
class SimplePolicyEngine(PolicyEngine):
    """Submits a transaction once, then resubmits and warns while it stays unmined.

    When ``execute`` raises a ConnectorError, its ``update`` attribute says
    whether the transaction must still be persisted.
    """

    fixed_gas_price: str | None
    resubmit_interval: timedelta
    gas_oracle_mode: str
    gas_oracle_method: str = "GET"
    gas_oracle_query_interval: timedelta = timedelta(0)
    gas_oracle_url: str = ""
    gas_oracle_template: Template | None = None
    _query_value: str | None = field(default=None, repr=False)
    _last_query_time: datetime | None = field(default=None, repr=False)

    def execute(self, connector: ConnectorAPI, mtx: ManagedTX) -> UpdateType:
        if mtx.delete_requested is not None:
            return UpdateType.DELETE

        if mtx.first_submit is None:
            mtx.gas_price = self.get_gas_price(connector)
            try:
                self._submit(connector, mtx)
            except ConnectorError as err:
                err.update = UpdateType.YES
                raise
            mtx.first_submit = mtx.last_submit
            return UpdateType.YES

        if mtx.receipt is None:
            return self._check_stale(connector, mtx)
        return UpdateType.NO

    def _check_stale(self, connector: ConnectorAPI, mtx: ManagedTX) -> UpdateType:
        info: dict = {}
        if mtx.policy_info:
            try:
                parsed = json.loads(mtx.policy_info)
                if isinstance(parsed, dict):
                    info = parsed
            except ValueError as err:
                log.warning("Failed to parse existing info `%s`: %s", mtx.policy_info, err)

        last_warn = mtx.first_submit
        if info.get("lastWarnTime"):
            try:
                last_warn = _parse_time(info["lastWarnTime"])
            except (TypeError, ValueError) as err:
                log.warning("Failed to parse last warning time: %s", err)

        now = _now()
        if now - last_warn <= self.resubmit_interval:
            return UpdateType.NO

        since = (now - mtx.first_submit).total_seconds()
        log.info("Transaction %s at nonce %s / %s has not been mined after %.2fs",
                 mtx.id, mtx.sender, mtx.nonce, since)
        info["lastWarnTime"] = now.isoformat()
        mtx.policy_info = json.dumps(info)
        try:
            self._submit(connector, mtx)
        except ConnectorError as err:
            if err.reason != ErrorReason.KNOWN_TRANSACTION:
                err.update = UpdateType.YES
                raise
        return UpdateType.YES

    def _submit(self, connector: ConnectorAPI, mtx: ManagedTX) -> None:
        request = TransactionSendRequest(
            sender=mtx.sender,
            to=mtx.to,
            nonce=mtx.nonce,
            gas=mtx.gas,
            value=mtx.value,
            gas_price=mtx.gas_price,
            transaction_data=mtx.transaction_data,
        )
        log.debug("Sending transaction %s at nonce %s / %s (lastSubmit=%s)",
                  mtx.id, mtx.sender, mtx.nonce, mtx.last_submit)
        try:
            tx_hash = connector.transaction_send(request)
        except ConnectorError as err:
            if err.reason in (ErrorReason.KNOWN_TRANSACTION, ErrorReason.NONCE_TOO_LOW) \
                    and mtx.transaction_hash:
                log.debug("Transaction %s known with hash: %s (%s)", mtx.id, mtx.transaction_hash, err)
                return
            raise
        mtx.transaction_hash = tx_hash
        mtx.last_submit = _now()
        log.info("Transaction %s at nonce %s / %s submitted. Hash: %s",
                 mtx.id, mtx.sender, mtx.nonce, mtx.transaction_hash)

    def get_gas_price(self, connector: ConnectorAPI) -> str | None:
        """Return the gas price: fixed, or from the connector or a REST oracle (cached)."""
        if (self._query_value is not None and self._last_query_time is not None
                and _now() - self._last_query_time < self.gas_oracle_query_interval):
            return self._query_value
        if self.gas_oracle_mode == GAS_ORACLE_MODE_RESTAPI:
            value = self._query_api()
        elif self.gas_oracle_mode == GAS_ORACLE_MODE_CONNECTOR:
            value = connector.gas_price_estimate()
        else:
            return self.fixed_gas_price
        self._query_value = value
        self._last_query_time = _now()
        return value

    def _query_api(self) -> str:
        request = urllib.request.Request(self.gas_oracle_url, method=self.gas_oracle_method)
        try:
            with urllib.request.urlopen(request, timeout=_HTTP_TIMEOUT) as response:
                body = response.read()
                content_type = response.headers.get_content_type()
        except urllib.error.HTTPError as err:
            raise TMError(ErrorCode.ERROR_QUERYING_GAS_ORACLE_API, err.code, err.reason) from err
        except (OSError, ValueError) as err:
            raise TMError(ErrorCode.ERROR_QUERYING_GAS_ORACLE_API, -1, str(err)) from err
        data = None
        if "json" in content_type:
            try:
                data = json.loads(body, parse_int=float)
            except ValueError as err:
                raise TMError(ErrorCode.ERROR_QUERYING_GAS_ORACLE_API, -1, str(err)) from err
        try:
            return self.gas_oracle_template.render(data)
        except TemplateError as err:
            raise TMError(ErrorCode.GAS_ORACLE_RESULT_ERROR) from err