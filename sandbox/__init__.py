"""Remote code-execution sandboxes (E2B) for the comparison panels."""

from .handle import ExecutionOutcome, SandboxHandle, sandbox_path
from .pool import SandboxCreationError, SandboxPool, create_e2b_sandbox
