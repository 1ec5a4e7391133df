"""
launcher.py - Simulation launcher

Owns every process-lifetime object of the engine:
- the transport used to issue calls
- the SimulationApi and its verbs
- one ScenarioStore/ScenarioScheduler per injector scenario
- the shared Responder and its per-verb entries
- the api server (socket or MQTT) exposing the verb surface

Design philosophy:
- Fail fast during setup (validation before anything is registered)
- Scenario objects are built once and live until shutdown()
- Autorun executes one scenario synchronously and reports it
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from simu.config.scenario import ScenarioConfig, SimulationConfig, load_config
from simu.harness.api import (
    LocalSession,
    ResetVerb,
    ResponderVerb,
    ScenarioControl,
    SimulationApi,
    TransactionVerb,
)
from simu.harness.events import ScenarioEvent
from simu.harness.executor import InjectorHandler
from simu.harness.report import summarize
from simu.harness.responder import (
    Responder,
    ResponderEntry,
    ResponderHandler,
    build_responder_entries,
)
from simu.harness.scheduler import ScenarioScheduler
from simu.harness.status import ConfigurationError, SimulationError
from simu.harness.store import ScenarioStore, TransactionEntry
from simu.transport.loopback import LoopbackTransport
from simu.transport.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class SimulationResult:
    """Outcome of an autorun."""
    success: bool
    duration_sec: float
    scenario: Optional[str] = None
    report: List[str] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)
    error_message: Optional[str] = None


class SimulationLauncher:
    """
    Builds and owns the engine from its configuration.

    Args:
        config: Parsed engine configuration
        transport: Transport for injected calls (default: built from
            config.transport)
    """

    def __init__(self, config: SimulationConfig, transport: Optional[Transport] = None):
        self.config = config
        self.transport = transport
        self._owns_transport = transport is None
        self.api: Optional[SimulationApi] = None
        self.stores: Dict[str, ScenarioStore] = {}
        self.schedulers: Dict[str, ScenarioScheduler] = {}
        self.responder: Optional[Responder] = None
        self.responder_entries: Dict[str, ResponderEntry] = {}
        self.server = None

    def validate_config(self) -> List[str]:
        """
        Validate configuration before launch.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        config = self.config

        if config.mode == "injector":
            for scenario in config.scenarios:
                target = scenario.target or config.target
                if not target:
                    errors.append(f"Scenario {scenario.uid}: missing target api from config")
                elif (config.transport.kind == "socket"
                      and target not in config.transport.targets):
                    errors.append(f"Scenario {scenario.uid}: no address for target '{target}' "
                                  f"in transport.targets")

                for transac in scenario.transactions:
                    if isinstance(transac.expect, list):
                        errors.append(f"Scenario {scenario.uid}: transaction {transac.uid} "
                                      f"takes a single expect, got {len(transac.expect)}")
        else:
            if config.autorun is not None:
                errors.append("autorun requires injector mode")

        return errors

    def launch(self) -> SimulationApi:
        """
        Build the verb surface.

        Raises:
            ConfigurationError: If validation fails
        """
        errors = self.validate_config()
        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

        if self.transport is None:
            self.transport = self._create_transport()

        self.api = SimulationApi(self.config.api, self.config.info)
        if self.config.mode == "injector":
            for scenario in self.config.scenarios:
                self._register_injector(scenario)
        else:
            self._register_responder()

        logger.info(f"api:{self.api.name} mode:{self.config.mode} "
                    f"scenarios:{len(self.config.scenarios)} verbs:{len(self.api.verbs)}")
        return self.api

    def _create_transport(self) -> Transport:
        kind = self.config.transport.kind
        if kind == "socket":
            from simu.transport.socket_transport import SocketTransport
            return SocketTransport(self.config.transport.targets)
        if kind == "mqtt":
            from simu.transport.mqtt_transport import MqttTransport
            transport = MqttTransport(self.config.transport.broker_host,
                                      self.config.transport.broker_port,
                                      client_id=f"{self.config.api}-injector")
            if self.config.mode == "injector":
                transport.connect()
            return transport
        return LoopbackTransport()

    def build_entries(self, scenario: ScenarioConfig) -> List[TransactionEntry]:
        target = scenario.target or self.config.target
        entries = []
        for transac in scenario.transactions:
            entries.append(TransactionEntry(
                uid=transac.uid,
                target=target,
                verb=transac.verb,
                queries=[transac.query] if transac.query is not None else [],
                expects=[transac.expect] if transac.expect is not None else [],
                delay_ms=self.config.delay.scale(transac.delay_ms),
                retry=transac.retry or self.config.retry,
            ))
        return entries

    def _register_injector(self, scenario: ScenarioConfig):
        store = ScenarioStore(scenario.uid, self.build_entries(scenario))
        event = ScenarioEvent(scenario.uid)
        scheduler = ScenarioScheduler(store, self.transport, event,
                                      self.config.delay, scenario.timeout_ms)
        self.stores[scenario.uid] = store
        self.schedulers[scenario.uid] = scheduler

        self.api.add_verb(scenario.uid, ScenarioControl(scheduler, event),
                          info=scenario.info or "['start','stop','exec','result']",
                          group=scenario.name)
        self.api.add_event(event)

        # manual single-shot calls get their own handler, a stopped run must not cancel them
        manual = InjectorHandler(store, self.transport, event)
        for index, transac in enumerate(scenario.transactions):
            if transac.verb in self.api.verbs:
                continue
            self.api.add_verb(transac.verb, TransactionVerb(manual, index, scheduler),
                              info=f"{scenario.uid}/{transac.uid}",
                              group=scenario.uid, sample=transac.query)

        logger.info(f"injector scenario {scenario.uid}: {store.count} transaction(s) "
                    f"watchdog:{scheduler.watchdog_ms}ms")

    def _register_responder(self):
        self.responder = Responder(loop_enabled=self.config.loop)
        self.api.add_verb("reset", ResetVerb(self.responder), info="restart responder session")

        for scenario in self.config.scenarios:
            scripted = []
            for transac in scenario.transactions:
                if transac.injector_only:
                    continue
                if transac.is_action:
                    logger.info(f"uid:{scenario.uid} scenario:{transac.uid} verb:{transac.verb} "
                                f"ignored (action defined)")
                    continue
                scripted.append({'uid': transac.uid, 'verb': transac.verb,
                                 'query': transac.query, 'expect': transac.expect})

            # ignore empty scenario
            if not scripted:
                continue

            event = ScenarioEvent(scenario.uid)
            self.api.add_event(event)
            handler = ResponderHandler(self.responder, event)

            for entry in build_responder_entries(scripted):
                sample = entry.queries[0] if entry.queries else None
                if self.api.add_verb(entry.verb, ResponderVerb(handler, entry),
                                     info=scenario.info, group=scenario.name, sample=sample):
                    self.responder_entries[entry.verb] = entry

            logger.info(f"responder scenario {scenario.uid}: {len(scripted)} transaction(s)")

    def serve(self) -> Any:
        """
        Expose the api on the configured transport.

        Returns:
            The started server (None for loopback)
        """
        if self.api is None:
            self.launch()

        kind = self.config.transport.kind
        if kind == "socket":
            from simu.transport.socket_transport import SocketApiServer
            self.server = SocketApiServer(self.api, self.config.transport.host,
                                          self.config.transport.port)
            self.server.start()
        elif kind == "mqtt":
            from simu.transport.mqtt_transport import MqttApiServer
            self.server = MqttApiServer(self.api, self.config.transport.broker_host,
                                        self.config.transport.broker_port)
            self.server.start()
        elif isinstance(self.transport, LoopbackTransport):
            self.transport.register(self.api.name, self.api)
        return self.server

    def run_autorun(self, uid: Optional[str] = None) -> SimulationResult:
        """
        Execute one scenario synchronously and collect its report.

        Args:
            uid: Scenario to run (default: config.autorun)
        """
        uid = uid or self.config.autorun
        started = time.time()
        try:
            if self.api is None:
                self.launch()
            if uid not in self.schedulers:
                raise ConfigurationError(f"autorun scenario '{uid}' not registered")

            session = LocalSession("autorun")
            report = self.api.call(uid, {'action': 'exec'}, session)
            scheduler = self.schedulers[uid]
            error = scheduler.last_error

            return SimulationResult(
                success=error is None,
                duration_sec=time.time() - started,
                scenario=uid,
                report=report,
                summary=summarize(scheduler.store.snapshot()),
                error_message=str(error) if error is not None else None,
            )
        except SimulationError as e:
            return SimulationResult(
                success=False,
                duration_sec=time.time() - started,
                scenario=uid,
                error_message=str(e),
            )

    def shutdown(self):
        """Cancel active runs and release the server and transport."""
        for scheduler in self.schedulers.values():
            if scheduler.running:
                scheduler.stop()
        if self.server is not None:
            self.server.stop()
            self.server = None
        if self.transport is not None and self._owns_transport:
            self.transport.close()
        logger.info("simulation shut down")


def run_config(config_path: str, autorun: Optional[str] = None,
               percent: Optional[int] = None) -> SimulationResult:
    """
    Convenience function to autorun a scenario from a YAML file.

    Args:
        config_path: Path to YAML configuration file
        autorun: Scenario uid overriding simulation.autorun
        percent: Override of the global delay scaling percent
    """
    config = load_config(config_path)
    if percent is not None:
        config.delay = replace(config.delay, percent=percent)

    launcher = SimulationLauncher(config)
    try:
        return launcher.run_autorun(autorun)
    finally:
        launcher.shutdown()
