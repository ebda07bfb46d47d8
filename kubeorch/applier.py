"""
Applier - submits resource groups to the substrate.

Create-or-update semantics come from the substrate: re-submitting a spec
reconciles the live object toward it, never duplicates it. The Applier keeps
no state between calls.
"""

import logging
import time
from typing import Any, Callable, Iterable, Sequence

from kubeorch.errors import PermanentError, SubmissionError, TransientError, ValidationError
from kubeorch.schemas import ResourceSpec, SubmitResult
from kubeorch.substrate import Substrate
from kubeorch.utils import retry_transient

logger = logging.getLogger(__name__)


class Applier:
    """
    Submit ordered resource groups.

    Args:
        substrate: Declarative-apply backend
        max_attempts: Attempts per spec when the substrate is unreachable
        backoff_seconds: First retry delay
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        substrate: Substrate,
        max_attempts: int = 4,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.substrate = substrate
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def retrying(self, func: Callable[[], Any]) -> Any:
        """Call `func`, retrying TransientError with this applier's backoff policy."""
        return retry_transient(
            func,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            logger=logger,
            sleep=self.sleep,
        )

    def submit(self, group: Sequence[ResourceSpec]) -> SubmitResult:
        """
        Apply every spec in `group`, in order.

        Stops at the first rejection; specs after it are not submitted.

        Args:
            group: Ordered specs of one stage

        Returns:
            SubmitResult; on failure carries the identity, reason and a SubmissionError
        """
        applied: list[str] = []
        for spec in group:
            try:
                self.retrying(lambda spec=spec: self.substrate.apply(spec))
            except TransientError as e:
                return self._failed(applied, spec, str(e), transient=True)
            except PermanentError as e:
                return self._failed(applied, spec, str(e), transient=False)

            applied.append(spec.identity)
            logger.info(f"Applied {spec.identity}", extra={"event": "spec_applied"})

        return SubmitResult(success=True, applied=applied)

    def _failed(self, applied: list[str], spec: ResourceSpec, reason: str, transient: bool) -> SubmitResult:
        error = SubmissionError(spec.identity, reason, transient=transient)
        logger.error(
            f"Submission failed: {error}",
            extra={
                "event": "spec_rejected",
                "metadata": {"identity": spec.identity, "transient": transient},
            },
        )
        return SubmitResult(
            success=False,
            applied=applied,
            failed_identity=spec.identity,
            reason=reason,
            transient=transient,
            error=error,
        )

    def validate(self, group: Iterable[ResourceSpec]) -> None:
        """
        Dry-run every spec client-side (kubectl apply --dry-run=client).

        Raises:
            ValidationError: The first spec the substrate refuses, or one that
                could not be checked because the substrate stayed unreachable
        """
        for spec in group:
            try:
                self.retrying(lambda spec=spec: self.substrate.apply(spec, dry_run=True))
            except TransientError as e:
                raise ValidationError(f"{spec.identity} could not be validated: {e}") from e
            except PermanentError as e:
                raise ValidationError(f"{spec.identity} is invalid: {e}") from e

    def remove(self, group: Sequence[ResourceSpec]) -> list[str]:
        """
        Delete every spec in `group` in reverse order, ignoring absent ones.

        Returns:
            Identities deletion was submitted for

        Raises:
            SubmissionError: A deletion was refused or connectivity retries ran out
        """
        removed: list[str] = []
        for spec in reversed(group):
            try:
                self.retrying(lambda spec=spec: self.substrate.delete(spec))
            except TransientError as e:
                raise SubmissionError(spec.identity, str(e), transient=True) from e
            except PermanentError as e:
                raise SubmissionError(spec.identity, str(e)) from e
            removed.append(spec.identity)
            logger.info(f"Deleted {spec.identity}", extra={"event": "spec_deleted"})
        return removed
