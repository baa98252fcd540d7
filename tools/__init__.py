"""Tools module for external pipeline operations.

Provides deterministic tool abstractions for:
- Git operations (clone, fetch, rev-parse)
- Docker operations (build, login, push)
- Kubernetes operations (apply, set image, rollout status)
- Step execution with timeouts and failure classification
- Deployment history for rollbacks
"""

from .base import (
    BaseTool,
    Command,
    CommandFailed,
    CommandKind,
    CommandOutput,
    ExecutionError,
    NetworkError,
    TimedOut,
)
from .docker_tool import DockerTool
from .git_tool import GitTool
from .http_tool import HttpTool
from .kubectl_tool import DeploymentRef, KubectlTool
from .rollback import DeploymentHistory, DeploymentRecord
from .shell_tool import ShellTool
from .step_executor import StepExecutor, classify_failure

__all__ = [
    "BaseTool",
    "Command",
    "CommandFailed",
    "CommandKind",
    "CommandOutput",
    "ExecutionError",
    "NetworkError",
    "TimedOut",
    "DockerTool",
    "GitTool",
    "HttpTool",
    "DeploymentRef",
    "KubectlTool",
    "DeploymentHistory",
    "DeploymentRecord",
    "ShellTool",
    "StepExecutor",
    "classify_failure",
]
