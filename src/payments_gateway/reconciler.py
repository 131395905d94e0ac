"""Ambiguous-failure reconciliation for mutating commands.

When a mutating call fails in a way that leaves open whether the processor
applied it (the connection dropped after sending, or the processor answered
with a code documented as "may have applied"), re-sending the mutation can
charge twice. Instead the reconciler asks the processor once, with the same
idempotency key, what happened to that attempt:

- inquiry says it succeeded: the inquiry result is returned as the outcome;
- inquiry says it did not, or the inquiry itself fails: the original
  failure is surfaced unchanged (returned, or the original exception
  re-raised). A failure is never replaced by a fabricated success.

Exactly one inquiry is made per ambiguous outcome. Retrying is the caller's
decision and must reuse the same idempotency key.
"""

import enum
import logging
from typing import Callable, FrozenSet, Iterable, Optional

from .models import (
    MUTATING_ACTIONS,
    CanonicalResult,
    ErrorCode,
    ErrorKind,
    TransactionAction,
    TransactionCommand,
)
from .transport import TransportError

logger = logging.getLogger(__name__)

Commit = Callable[[TransactionCommand], CanonicalResult]


class Outcome(str, enum.Enum):
    DEFINITE_SUCCESS = "definite_success"
    DEFINITE_FAILURE = "definite_failure"
    AMBIGUOUS = "ambiguous"


class AmbiguousFailureReconciler:
    """Wrap single remote calls with inquiry-based recovery."""

    def __init__(
        self,
        commit: Commit,
        ambiguous_codes: Iterable[str] = (),
        inquiry_actions: Optional[Iterable[TransactionAction]] = None,
        test: bool = False,
    ):
        self.commit = commit
        self.test = test
        self.ambiguous_codes: FrozenSet[str] = frozenset(ambiguous_codes)
        # None means every mutating action can be looked up; empty means none.
        self.inquiry_actions: FrozenSet[TransactionAction] = frozenset(
            MUTATING_ACTIONS if inquiry_actions is None else inquiry_actions
        )

    def classify(self, result: CanonicalResult) -> Outcome:
        if result.success:
            return Outcome.DEFINITE_SUCCESS
        if result.provider_response_code in self.ambiguous_codes:
            return Outcome.AMBIGUOUS
        return Outcome.DEFINITE_FAILURE

    @staticmethod
    def classify_error(error: TransportError) -> Outcome:
        return Outcome.AMBIGUOUS if error.may_have_applied else Outcome.DEFINITE_FAILURE

    def error_kind(self, result: CanonicalResult) -> Optional[ErrorKind]:
        if self.classify(result) == Outcome.AMBIGUOUS:
            return ErrorKind.AMBIGUOUS
        return result.error_kind

    def run(self, command: TransactionCommand) -> CanonicalResult:
        """Execute ``command``, reconciling an ambiguous outcome.

        Raises:
            TransportError: The original error, when the request may have
                been applied and the inquiry could not confirm it.
        """
        if not command.is_mutating:
            return self.commit(command)

        try:
            result = self.commit(command)
        except TransportError as e:
            if self.classify_error(e) == Outcome.DEFINITE_FAILURE:
                logger.info(f"{command.action.value} {command.idempotency_key} not sent: {e}")
                return CanonicalResult.failure(
                    f"Connection failed before the request was sent: {e}",
                    ErrorCode.CONNECTION_ERROR,
                    amount=command.amount,
                    test=self.test,
                )
            logger.warning(
                f"{command.action.value} {command.idempotency_key} interrupted after sending; "
                "checking with processor"
            )
            confirmed = self._confirmed_by_inquiry(command)
            if confirmed is None:
                raise
            return confirmed

        if self.classify(result) != Outcome.AMBIGUOUS:
            return result

        logger.warning(
            f"{command.action.value} {command.idempotency_key} returned ambiguous code "
            f"{result.provider_response_code}; checking with processor"
        )
        confirmed = self._confirmed_by_inquiry(command)
        return confirmed if confirmed is not None else result

    def _confirmed_by_inquiry(self, command: TransactionCommand) -> Optional[CanonicalResult]:
        if command.action not in self.inquiry_actions:
            logger.warning(f"No inquiry available to resolve {command.idempotency_key}")
            return None
        try:
            inquiry = self.commit(command.inquiry_command())
        except TransportError as e:
            logger.warning(f"Inquiry for {command.idempotency_key} failed: {e}")
            return None
        if not inquiry.success:
            logger.info(f"Inquiry for {command.idempotency_key}: not applied")
            return None
        logger.info(f"Inquiry for {command.idempotency_key}: already applied")
        if inquiry.amount is None:
            inquiry = inquiry.model_copy(update={"amount": command.amount})
        return inquiry
