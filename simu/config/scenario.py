"""
scenario.py - YAML scenario configuration

Parses engine and scenario configuration from YAML files.

Design philosophy:
- Keep it simple: minimal validation, no schema framework
- Fail fast: raise ConfigurationError with the offending field
- Defaults live here, not in the engine

Example YAML:
    simulation:
      uid: iso15118-simu
      mode: injector          # "injector" or "responder"
      target: iso15118-evse
      loop: false
      delay: {percent: 100, min: 0, max: 60000}
      retry: {delay: 100, timeout: 1000, count: 1}

    transport:                # optional, default loopback
      kind: socket            # "loopback", "socket" or "mqtt"
      port: 5100
      targets:
        iso15118-evse: localhost:5200

    scenarios:
      - uid: charging-session
        prefix: iso2
        transactions:
          - uid: session-setup
            query: {evcc_id: "01:02:03:04:05:06"}
            expect: {rcode: ok}
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from simu.harness.policy import DelayPolicy, RetryPolicy
from simu.harness.status import ConfigurationError


MODES = ("injector", "responder")
TRANSPORTS = ("loopback", "socket", "mqtt")


def default_verb(uid: str, prefix: Optional[str]) -> str:
    """Verb used when a transaction does not name one."""
    name = f"{uid.replace('-', '_')}_req"
    if prefix:
        return f"{prefix}:{name}"
    return name


@dataclass
class TransactionConfig:
    """
    One scripted transaction.

    Attributes:
        uid: Transaction identifier
        verb: Verb to call/answer
        query: Request payload (injector) or expected incoming payload (responder)
        expect: Expected reply (injector) or scripted reply (responder)
        delay_ms: Nominal delay before the call
        retry: Per-transaction retry override
        injector_only: Not exposed on the responder verb surface
    """
    uid: str
    verb: str
    query: Any = None
    expect: Any = None
    delay_ms: int = 0
    retry: Optional[RetryPolicy] = None
    injector_only: bool = False

    def __post_init__(self):
        if self.delay_ms < 0:
            raise ConfigurationError(f"delay must be non-negative, got {self.delay_ms}", uid=self.uid)

    @property
    def is_action(self) -> bool:
        """Query carries a control action rather than protocol data."""
        return isinstance(self.query, dict) and 'action' in self.query


@dataclass
class ScenarioConfig:
    """
    Scenario configuration.

    Attributes:
        uid: Scenario identifier (also its control verb and event name)
        name: Display name
        info: Free text description
        prefix: Verb prefix for transactions without an explicit verb
        target: Per-scenario target api override
        timeout_ms: Nominal watchdog (None: computed from the transactions)
        transactions: Ordered transactions
    """
    uid: str
    transactions: List[TransactionConfig]
    name: Optional[str] = None
    info: str = ""
    prefix: Optional[str] = None
    target: Optional[str] = None
    timeout_ms: Optional[int] = None

    def __post_init__(self):
        if self.name is None:
            self.name = self.uid
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout_ms}", uid=self.uid)


@dataclass
class TransportConfig:
    """
    Transport configuration.

    Attributes:
        kind: "loopback", "socket" or "mqtt"
        host: Listen host of the api server
        port: Listen port of the api server (socket)
        targets: Target api name -> "host:port" (socket)
        broker_host: MQTT broker host
        broker_port: MQTT broker port
    """
    kind: str = "loopback"
    host: str = "localhost"
    port: int = 0
    targets: Dict[str, str] = field(default_factory=dict)
    broker_host: str = "localhost"
    broker_port: int = 1883

    def __post_init__(self):
        if self.kind not in TRANSPORTS:
            raise ConfigurationError(
                f"transport.kind must be one of {', '.join(TRANSPORTS)}, got '{self.kind}'")


@dataclass
class SimulationConfig:
    """
    Engine configuration.

    Attributes:
        uid: Engine identifier
        api: Name of the exposed verb surface
        mode: "injector" or "responder"
        scenarios: Scenario configurations
        target: Default target api for injected calls
        loop: Responder sequences wrap around
        autorun: Scenario executed at startup in batch mode
        delay: Global delay scaling policy
        retry: Default retry policy
        transport: Transport configuration
    """
    uid: str
    mode: str
    scenarios: List[ScenarioConfig]
    api: Optional[str] = None
    info: str = ""
    target: Optional[str] = None
    loop: bool = False
    autorun: Optional[str] = None
    delay: DelayPolicy = field(default_factory=DelayPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    transport: TransportConfig = field(default_factory=TransportConfig)

    def __post_init__(self):
        if self.api is None:
            self.api = self.uid

        if self.mode not in MODES:
            raise ConfigurationError(
                f"expected mode:'injector'|'responder' got:'{self.mode}'")

        uids = [s.uid for s in self.scenarios]
        duplicates = sorted({u for u in uids if uids.count(u) > 1})
        if duplicates:
            raise ConfigurationError(f"duplicate scenario uid(s): {', '.join(duplicates)}")

        if self.autorun is not None and self.autorun not in uids:
            raise ConfigurationError(f"autorun scenario '{self.autorun}' not defined")

    def get_scenario(self, uid: str) -> ScenarioConfig:
        for scenario in self.scenarios:
            if scenario.uid == uid:
                return scenario
        raise ConfigurationError(f"unknown scenario '{uid}'")


def _section(data: Dict[str, Any], key: str, where: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{where}{key}' section must be a dict")
    return value


def parse_retry(data: Dict[str, Any], default: RetryPolicy) -> RetryPolicy:
    return RetryPolicy(
        delay_ms=int(data.get('delay', default.delay_ms)),
        timeout_ms=int(data.get('timeout', default.timeout_ms)),
        count=int(data.get('count', default.count)),
    )


def parse_delay(data: Dict[str, Any]) -> DelayPolicy:
    default = DelayPolicy()
    return DelayPolicy(
        percent=int(data.get('percent', default.percent)),
        min_ms=int(data.get('min', default.min_ms)),
        max_ms=int(data.get('max', default.max_ms)),
    )


def parse_transaction(transac: Any, idx: int, scenario_uid: str,
                      prefix: Optional[str], default_retry: RetryPolicy) -> TransactionConfig:
    if not isinstance(transac, dict):
        raise ConfigurationError(f"transaction {idx} must be a dict, got {type(transac).__name__}",
                                 uid=scenario_uid)
    if 'uid' not in transac:
        raise ConfigurationError(f"transaction {idx}: missing required field 'uid'", uid=scenario_uid)

    uid = str(transac['uid'])
    retry = None
    if 'retry' in transac:
        retry_data = transac['retry']
        if not isinstance(retry_data, dict):
            raise ConfigurationError("'retry' must be a dict", uid=uid)
        retry = parse_retry(retry_data, default_retry)

    return TransactionConfig(
        uid=uid,
        verb=transac.get('verb') or default_verb(uid, prefix),
        query=transac.get('query'),
        expect=transac.get('expect'),
        delay_ms=int(transac.get('delay', 0)),
        retry=retry,
        injector_only=bool(transac.get('injector_only', False)),
    )


def parse_scenario(jscenario: Any, idx: int, default_retry: RetryPolicy) -> ScenarioConfig:
    if not isinstance(jscenario, dict):
        raise ConfigurationError(f"scenario {idx} must be a dict, got {type(jscenario).__name__}")
    if 'uid' not in jscenario:
        raise ConfigurationError(f"scenario {idx}: missing required field 'uid'")

    uid = str(jscenario['uid'])
    transactions = jscenario.get('transactions')
    if not isinstance(transactions, list):
        raise ConfigurationError(
            "transactions should be a valid array of (uid,query,expect)", uid=uid)

    prefix = jscenario.get('prefix')
    timeout = jscenario.get('timeout')

    return ScenarioConfig(
        uid=uid,
        name=jscenario.get('name'),
        info=jscenario.get('info', ""),
        prefix=prefix,
        target=jscenario.get('target'),
        timeout_ms=int(timeout) if timeout is not None else None,
        transactions=[
            parse_transaction(t, i, uid, prefix, default_retry)
            for i, t in enumerate(transactions)
        ],
    )


def parse_config(data: Any) -> SimulationConfig:
    """
    Build a SimulationConfig from already-loaded YAML data.

    Raises:
        ConfigurationError: If required fields are missing or invalid
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"configuration must be a dict, got {type(data).__name__}")

    sim = _section(data, 'simulation', '')
    transport = _section(data, 'transport', '')

    scenarios = data.get('scenarios')
    if scenarios is None:
        raise ConfigurationError("Missing required section: 'scenarios'")
    if not isinstance(scenarios, list):
        raise ConfigurationError("scenarios should be a valid array of simulator messages")

    retry = parse_retry(_section(sim, 'retry', 'simulation.'), RetryPolicy())
    delay = parse_delay(_section(sim, 'delay', 'simulation.'))

    targets = transport.get('targets', {}) or {}
    if not isinstance(targets, dict):
        raise ConfigurationError("'transport.targets' must be a dict of name: host:port")

    transport_config = TransportConfig(
        kind=transport.get('kind', 'loopback'),
        host=transport.get('host', 'localhost'),
        port=int(transport.get('port', 0)),
        targets={str(k): str(v) for k, v in targets.items()},
        broker_host=transport.get('broker_host', 'localhost'),
        broker_port=int(transport.get('broker_port', 1883)),
    )

    uid = sim.get('uid', 'simu')
    return SimulationConfig(
        uid=uid,
        api=sim.get('api'),
        info=sim.get('info', ""),
        mode=sim.get('mode', 'injector') or 'injector',
        target=sim.get('target'),
        loop=bool(sim.get('loop', False)),
        autorun=sim.get('autorun'),
        delay=delay,
        retry=retry,
        transport=transport_config,
        scenarios=[parse_scenario(s, i, retry) for i, s in enumerate(scenarios)],
    )


def load_config(yaml_path: str) -> SimulationConfig:
    """
    Load engine configuration from a YAML file.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        SimulationConfig with defaults applied

    Raises:
        FileNotFoundError: If the YAML file doesn't exist
        ConfigurationError: If required fields are missing or invalid
        yaml.YAMLError: If YAML syntax is invalid
    """
    path = Path(yaml_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML syntax in {yaml_path}: {e}")

    return parse_config(data)
