"""
Ordered bootstrap pipeline.

Runs cgroup reconciliation, storage selection, network provisioning and
daemon supervision as stages over one shared context.
"""

from .stages import BootstrapContext, Stage, StageResult
from .bootstrap_orchestrator import BootstrapOrchestrator, BootstrapResult

__all__ = ['BootstrapContext', 'Stage', 'StageResult',
           'BootstrapOrchestrator', 'BootstrapResult']
