"""Runs the reconciliation phases in order and aggregates their results."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..config import AppConfig, ConfigError
from ..directory_client import DirectoryClient
from ..outline_client import OutlineClient
from .allowlist import AllowlistPolicy
from .engine import (
    PHASE_ADMINS,
    PHASE_AUTHORIZATIONS,
    PHASE_COLLECTIONS,
    PHASE_UNITS,
    PhaseResult,
    ReconciliationEngine,
)
from .snapshot import SnapshotCache

logger = logging.getLogger(__name__)

# Collections mirror the groups left after the unit and admin phases
PHASE_ORDER = (PHASE_UNITS, PHASE_AUTHORIZATIONS, PHASE_ADMINS, PHASE_COLLECTIONS)

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIG_ERROR = 2


@dataclass
class RunResult:
    """Result of a whole sync run."""

    phases: list[PhaseResult] = field(default_factory=list)
    config_error: str | None = None

    @property
    def success(self) -> bool:
        return self.config_error is None and all(p.success for p in self.phases)

    @property
    def exit_code(self) -> int:
        if self.config_error is not None:
            return EXIT_CONFIG_ERROR
        return EXIT_OK if self.success else EXIT_PARTIAL_FAILURE

    @property
    def mutations(self) -> int:
        return sum(p.mutations for p in self.phases)

    def phase(self, name: str) -> PhaseResult | None:
        return next((p for p in self.phases if p.phase == name), None)


def select_phases(phases: Iterable[str] | None) -> list[str]:
    """Normalize requested phase names into execution order.

    Raises:
        ConfigError: If an unknown phase is requested.
    """
    if not phases:
        return list(PHASE_ORDER)
    requested = {p.strip().lower() for p in phases}
    unknown = sorted(requested - set(PHASE_ORDER))
    if unknown:
        raise ConfigError(
            f"Unknown phase(s): {', '.join(unknown)} (expected: {', '.join(PHASE_ORDER)})"
        )
    return [p for p in PHASE_ORDER if p in requested]


class SyncRunner:
    """
    Wires clients, snapshot and policy together and runs the selected phases.

    Clients built here are closed when the run ends; injected clients are
    left open for the caller.
    """

    def __init__(
        self,
        config: AppConfig,
        outline: OutlineClient | None = None,
        directory: DirectoryClient | None = None,
    ):
        self.config = config
        self._owns_outline = outline is None
        self._owns_directory = directory is None
        self.outline = outline or OutlineClient(
            config.outline.api_url,
            config.outline.api_token,
            timeout=config.outline.timeout,
        )
        self.directory = directory or DirectoryClient(
            config.directory.url,
            config.directory.username,
            config.directory.password,
            timeout=config.directory.timeout,
            max_groups=config.directory.max_groups,
        )

    def close(self) -> None:
        if self._owns_outline:
            self.outline.close()
        if self._owns_directory:
            self.directory.close()

    def verify_connections(self) -> dict[str, bool]:
        """Check that both APIs accept our credentials."""
        results = {"outline": False, "directory": False}
        try:
            self.outline.auth_info()
            results["outline"] = True
        except Exception as e:
            logger.error("Outline connection failed: %s", e)
        try:
            self.directory.get_group_members(
                self.config.sync.directory_admin_group, recursive=False
            )
            results["directory"] = True
        except Exception as e:
            logger.error("Directory connection failed: %s", e)
        return results

    def run(self, phases: Iterable[str] | None = None) -> RunResult:
        """Run the selected phases (all by default) in their fixed order."""
        settings = self.config.sync
        requested = [p.strip().lower() for p in phases or []]
        try:
            selected = select_phases(requested)
            if PHASE_AUTHORIZATIONS in requested and not settings.authorizations_enabled:
                raise ConfigError(
                    "The authorizations phase needs SYNC_AUTHORIZATION_RIGHT_ID to be set"
                )
            allowlist = AllowlistPolicy.from_file(settings.allowed_units_file)
        except ConfigError as e:
            logger.error("Configuration error: %s", e)
            return RunResult(config_error=str(e))

        engine = ReconciliationEngine(
            self.outline,
            self.directory,
            SnapshotCache(self.outline),
            allowlist,
            settings,
            service_email=self.config.outline.admin_email,
        )

        run = RunResult()
        for phase in selected:
            if phase == PHASE_AUTHORIZATIONS and not settings.authorizations_enabled:
                logger.info("No authorization right configured, skipping authorizations")
                continue

            logger.info("Starting %s phase", phase, extra={"phase": phase})
            try:
                result = engine.run_phase(phase)
            except Exception as e:
                # One phase failing must not prevent the others from running
                logger.exception("Phase %s failed: %s", phase, e, extra={"phase": phase})
                result = PhaseResult(phase=phase, errors=[str(e)], aborted=True)

            run.phases.append(result)
            log = logger.info if result.success else logger.warning
            log(
                "Finished %s phase",
                phase,
                extra={
                    "phase": phase,
                    "success": result.success,
                    "mutations": result.mutations,
                    "errors": len(result.errors),
                    "duration_seconds": round(result.duration_seconds, 2),
                    **result.counters(),
                },
            )

        return run


def run_sync(
    config: AppConfig,
    phases: Iterable[str] | None = None,
    outline: OutlineClient | None = None,
    directory: DirectoryClient | None = None,
) -> RunResult:
    """Run one reconciliation pass and close any clients it created."""
    runner = SyncRunner(config, outline=outline, directory=directory)
    try:
        return runner.run(phases)
    finally:
        runner.close()
