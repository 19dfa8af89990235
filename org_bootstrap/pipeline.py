# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Pipeline Module

Sequential stage executor. Stages are declared up front with a failure
policy: a fatal stage aborts the run, a warn stage is logged and the run
continues. The JSON report is written on every exit path, including fatal
failures and interrupts.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from botocore.exceptions import ClientError
from pydantic import BaseModel, Field
from rich.console import Console

from . import display
from .aws import ControlPlane
from .config import BootstrapConfig
from .exceptions import BootstrapError, ConfigurationDegraded, InterruptedRun, TransientFailure
from .polling import calculate_backoff
from .reconciler import ReconcileResult
from .registry import AccountRegistry

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    FATAL = "fatal"
    WARN = "warn"


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StageStatus(str, Enum):
    PASSED = "passed"
    WARNED = "warned"
    FAILED = "failed"


@dataclass
class Stage:
    name: str
    action: Callable[["RunContext"], Any]
    policy: FailurePolicy = FailurePolicy.FATAL


@dataclass
class StageResult:
    name: str
    status: StageStatus
    duration_seconds: float
    attempts: int = 1
    error: Optional[str] = None


@dataclass
class RunContext:
    """State shared by the stages of one run"""

    config: BootstrapConfig
    plane: ControlPlane
    console: Console = field(default_factory=lambda: display.console)
    sleep: Callable[[float], None] = time.sleep
    management_account_id: Optional[str] = None
    registry: Optional[AccountRegistry] = None
    ou_id: Optional[str] = None
    accounts: Dict[str, str] = field(default_factory=dict)
    provider_arns: Dict[str, str] = field(default_factory=dict)
    role_arns: Dict[str, str] = field(default_factory=dict)
    backends: Dict[str, Dict] = field(default_factory=dict)
    console_urls: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)
    outcomes: List[ReconcileResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def record(self, result: ReconcileResult) -> ReconcileResult:
        """Keep a reconcile result for the report and return it"""
        self.outcomes.append(result)
        return result

    def checkpoint(self) -> Tuple[int, int]:
        return len(self.outcomes), len(self.warnings)

    def rollback(self, mark: Tuple[int, int]) -> None:
        """Drop results and warnings recorded by an attempt that is being retried"""
        outcomes, warnings = mark
        del self.outcomes[outcomes:]
        del self.warnings[warnings:]

    def warn(self, warning) -> None:
        message = str(warning)
        if isinstance(warning, ConfigurationDegraded):
            message = f"Configuration degraded: {message}"
        logger.warning(message)
        self.warnings.append(message)


class BootstrapReport(BaseModel):
    """Machine-readable summary of one run"""

    timestamp: str
    run: str
    status: str
    dry_run: bool = False
    duration_seconds: float
    stages_total: int
    stages_completed: int
    stages_failed: int
    stages_warned: int = 0
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    stages: List[Dict] = Field(default_factory=list)
    outcomes: Dict[str, int] = Field(default_factory=dict)
    resources: List[Dict] = Field(default_factory=list)
    accounts: Dict[str, str] = Field(default_factory=dict)
    provider_arns: Dict[str, str] = Field(default_factory=dict)
    role_arns: Dict[str, str] = Field(default_factory=dict)
    backends: Dict[str, Dict] = Field(default_factory=dict)
    console_urls: Dict[str, str] = Field(default_factory=dict)
    details: Dict[str, Any] = Field(default_factory=dict)


class PipelineExecutor:
    """Runs stages in order and reports the outcome"""

    def __init__(
        self,
        run_name: str,
        stages: Sequence[Stage],
        report_path: Path,
        stage_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize executor

        Args:
            run_name: Name of the run, e.g. "foundation"
            stages: Ordered stages
            report_path: Where the JSON report is written
            stage_attempts: Attempts for a stage raising TransientFailure
            clock: Monotonic clock, replaceable in tests
        """
        self.run_name = run_name
        self.stages = list(stages)
        self.report_path = Path(report_path)
        self.stage_attempts = max(1, stage_attempts)
        self.clock = clock
        self.state = RunState.NOT_STARTED
        self.current_stage = 0
        self.results: List[StageResult] = []

    @property
    def total(self) -> int:
        return len(self.stages)

    def run(self, ctx: RunContext) -> BootstrapReport:
        """
        Execute all stages

        Returns:
            The written report; status is "failure" when a fatal stage failed

        Raises:
            InterruptedRun: On SIGINT/SIGTERM, after the report is written
        """
        started = self.clock()
        self.state = RunState.RUNNING
        failed_stage = None
        error = None

        try:
            for index, stage in enumerate(self.stages, 1):
                self.current_stage = index
                display.show_stage_header(index, self.total, stage.name, ctx.console)
                result = self._run_stage(stage, ctx)
                self.results.append(result)
                display.show_stage_result(
                    stage.name, result.status.value, result.error or "", ctx.console
                )
                if result.status == StageStatus.FAILED:
                    failed_stage = stage.name
                    error = result.error
                    break
            self.state = RunState.FAILED if failed_stage else RunState.COMPLETED
        except (KeyboardInterrupt, InterruptedRun):
            self.state = RunState.FAILED
            failed_stage = self.stages[self.current_stage - 1].name if self.current_stage else None
            error = "Interrupted"
            ctx.console.print("\n[red]✗ Interrupted; no cleanup performed. Re-run to converge.[/red]")
            raise InterruptedRun("Run interrupted")
        except BaseException as e:
            self.state = RunState.FAILED
            failed_stage = self.stages[self.current_stage - 1].name if self.current_stage else None
            error = f"{type(e).__name__}: {e}"
            raise
        finally:
            report = self._build_report(ctx, self.clock() - started, failed_stage, error)
            self.write_report(report)

        return report

    def _run_stage(self, stage: Stage, ctx: RunContext) -> StageResult:
        started = self.clock()
        attempt = 0
        while True:
            attempt += 1
            mark = ctx.checkpoint()
            try:
                stage.action(ctx)
                return StageResult(stage.name, StageStatus.PASSED, self.clock() - started, attempt)
            except InterruptedRun:
                raise
            except TransientFailure as e:
                if attempt < self.stage_attempts:
                    delay = calculate_backoff(attempt - 1)
                    logger.warning(
                        f"{stage.name}: {e}; retrying in {delay:.1f}s "
                        f"({attempt}/{self.stage_attempts})"
                    )
                    ctx.sleep(delay)
                    ctx.rollback(mark)
                    continue
                message = str(e)
            except (BootstrapError, ClientError, OSError) as e:
                message = str(e)

            duration = self.clock() - started
            if stage.policy == FailurePolicy.WARN:
                ctx.warn(f"{stage.name}: {message}")
                return StageResult(stage.name, StageStatus.WARNED, duration, attempt, message)

            logger.error(f"{stage.name} failed: {message}")
            return StageResult(stage.name, StageStatus.FAILED, duration, attempt, message)

    def _build_report(
        self,
        ctx: RunContext,
        duration: float,
        failed_stage: Optional[str],
        error: Optional[str],
    ) -> BootstrapReport:
        counts: Dict[str, int] = {}
        for outcome in ctx.outcomes:
            counts[outcome.outcome.value] = counts.get(outcome.outcome.value, 0) + 1

        return BootstrapReport(
            timestamp=datetime.now(timezone.utc).isoformat(),
            run=self.run_name,
            status="success" if self.state == RunState.COMPLETED else "failure",
            dry_run=ctx.dry_run,
            duration_seconds=round(duration, 3),
            stages_total=self.total,
            stages_completed=sum(1 for r in self.results if r.status == StageStatus.PASSED),
            stages_failed=sum(1 for r in self.results if r.status == StageStatus.FAILED)
            + (1 if error and not any(r.status == StageStatus.FAILED for r in self.results) else 0),
            stages_warned=sum(1 for r in self.results if r.status == StageStatus.WARNED),
            failed_stage=failed_stage,
            error=error,
            warnings=list(ctx.warnings),
            stages=[
                {
                    "name": r.name,
                    "status": r.status.value,
                    "duration_seconds": round(r.duration_seconds, 3),
                    "attempts": r.attempts,
                    "error": r.error,
                }
                for r in self.results
            ],
            outcomes=counts,
            resources=[
                {"kind": o.kind, "key": o.key, "outcome": o.outcome.value} for o in ctx.outcomes
            ],
            accounts=dict(ctx.accounts),
            provider_arns=dict(ctx.provider_arns),
            role_arns=dict(ctx.role_arns),
            backends=dict(ctx.backends),
            console_urls=dict(ctx.console_urls),
            details=dict(ctx.extra),
        )

    def write_report(self, report: BootstrapReport) -> None:
        try:
            self.report_path.parent.mkdir(parents=True, exist_ok=True)
            self.report_path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
            logger.info(f"Report written to {self.report_path}")
        except OSError as e:
            logger.error(f"Could not write report {self.report_path}: {e}")
