#!/usr/bin/env python3
"""
Bootstrap orchestrator for the nested container runtime.

Runs the stages strictly in order and stops at the first failure. There
is no partial-success mode and no retry: a failed stage leaves whatever it
mounted or started in place for diagnosis.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from dind_bootstrap.config.bootstrap_config import BootstrapConfig
from dind_bootstrap.orchestrator.stages import (
    BootstrapContext, CgroupStage, DaemonStage, NetworkStage, Stage, StageResult, StorageStage,
)


@dataclass
class BootstrapResult:
    """Result of a bootstrap run."""
    success: bool
    context: BootstrapContext
    stages: List[StageResult] = field(default_factory=list)

    @property
    def failed_stage(self) -> Optional[StageResult]:
        for result in self.stages:
            if not result.success:
                return result
        return None

    @property
    def error_message(self) -> Optional[str]:
        failed = self.failed_stage
        return failed.error_message if failed else None


class BootstrapOrchestrator:
    """Runs the bootstrap stages over a shared context."""

    def __init__(self, config: BootstrapConfig, stages: Optional[Sequence[Stage]] = None):
        """
        Initialize bootstrap orchestrator.

        Args:
            config: Bootstrap configuration
            stages: Stages to run; defaults to the standard four
        """
        self.config = config
        self.stages = list(stages) if stages is not None else self.default_stages()
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def default_stages() -> List[Stage]:
        return [CgroupStage(), StorageStage(), NetworkStage(), DaemonStage()]

    def run(self) -> BootstrapResult:
        """
        Run every stage in order.

        Returns:
            BootstrapResult; success is False as soon as a stage fails
        """
        context = BootstrapContext(config=self.config)
        result = BootstrapResult(success=True, context=context)

        for stage in self.stages:
            self.logger.info(f"Running stage: {stage.name}")
            stage_result = stage.run(context)
            result.stages.append(stage_result)

            if not stage_result.success:
                self.logger.error(f"Bootstrap stopped at stage {stage.name}: {stage_result.error_message}")
                result.success = False
                return result

        if context.warnings:
            self.logger.warning(f"Bootstrap completed with {len(context.warnings)} warning(s)")
        else:
            self.logger.info("Bootstrap completed successfully")
        return result
