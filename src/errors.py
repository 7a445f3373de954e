from contextlib import contextmanager
from typing import Iterator

from util import UserError, DeadlineExceeded


class OnboardError(UserError):
    """Base class of every failure the onboarding tool reports to the user.

    Each subclass maps to its own process exit code. The 'step' and 'tenant' attributes are filled in by the
    provisioner as the error propagates, so the final message names where the failure happened and for whom."""

    exit_code: int = 1

    def __init__(self, message: str, step: str = None, tenant: str = None) -> None:
        super().__init__(message)
        self.reason: str = message
        self.step: str = step
        self.tenant: str = tenant
        self.message = self._format()

    def _format(self) -> str:
        if self.step and self.tenant:
            return f"{self.step} failed for tenant '{self.tenant}': {self.reason}"
        elif self.step:
            return f"{self.step} failed: {self.reason}"
        elif self.tenant:
            return f"tenant '{self.tenant}': {self.reason}"
        else:
            return self.reason

    def attach(self, step: str = None, tenant: str = None) -> 'OnboardError':
        if self.step is None and step is not None:
            self.step = step
        if self.tenant is None and tenant is not None:
            self.tenant = tenant
        self.message = self._format()
        self.args = (self.message,)
        return self

    def __str__(self) -> str:
        return self.message


class ClusterError(OnboardError):
    """A cluster command failed for a reason other than availability."""
    exit_code = 1


class InvalidInput(OnboardError):
    exit_code = 2


class UnknownRole(OnboardError):
    exit_code = 3


class ApprovalDenied(OnboardError):
    exit_code = 4


class IssuanceTimeout(OnboardError):
    exit_code = 5


class NoIngressClass(OnboardError):
    exit_code = 6


class CertificateUnavailable(OnboardError):
    exit_code = 7


class ResourceConflict(OnboardError):
    exit_code = 8


class NotFound(OnboardError):
    exit_code = 9


class ClusterUnavailable(OnboardError):
    exit_code = 10


class OperationTimeout(OnboardError):
    """The run's overall deadline passed before a step could complete."""
    exit_code = 11


@contextmanager
def failing_step(name: str, tenant: str) -> Iterator[None]:
    """Names the step being performed, and the tenant it is performed for, in any error escaping the block."""
    try:
        yield
    except OnboardError as e:
        raise e.attach(step=name, tenant=tenant)
    except DeadlineExceeded as e:
        raise OperationTimeout(f"deadline passed: {e}", step=name, tenant=tenant) from e
