"""
Error taxonomy for pipeline stages.

Stage-level problems (missing inputs, header drift, lock conflicts) are raised.
Per-record problems are never raised: stages skip the record and count it.
"""
import json
from typing import Any, Dict, List, Optional, Sequence


class PipelineError(Exception):
    """Base class for all stage-level failures."""
    retryable = False


class MissingInputError(PipelineError):
    """A required upstream artifact is absent or holds zero rows."""

    def __init__(self, artifact: str, tried_paths: Sequence[str], reason: str = "missing"):
        self.artifact = artifact
        self.tried_paths = [str(p) for p in tried_paths]
        self.reason = reason
        tried = ", ".join(self.tried_paths) or "(no candidates)"
        super().__init__(f"{artifact}: {reason}; tried {tried}")


class SchemaDriftError(PipelineError):
    """A required field is absent under every known header alias."""

    def __init__(self, field: str, aliases: Sequence[str], sample: Optional[Dict[str, Any]] = None):
        self.field = field
        self.aliases = list(aliases)
        self.sample = dict(sample or {})
        sample_text = json.dumps(self.sample, default=str)[:500]
        super().__init__(
            f"field '{field}' not found under any alias {self.aliases}; sample row: {sample_text}"
        )


class ConcurrentWriteError(PipelineError):
    """Another run holds the advisory lock for this artifact. Try again later."""
    retryable = True

    def __init__(self, lock_path: str, holder: str = ""):
        self.lock_path = str(lock_path)
        self.holder = holder
        super().__init__(f"artifact locked by another run ({holder or 'unknown holder'}): {self.lock_path}")


def describe(err: PipelineError) -> List[str]:
    """Operator-facing lines for a stage failure."""
    lines = [str(err)]
    if isinstance(err, MissingInputError):
        lines.extend(f"  tried: {p}" for p in err.tried_paths)
    if err.retryable:
        lines.append("  try again once the other run has finished")
    return lines
