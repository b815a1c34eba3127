"""
BaseService -- abstract base for kernel services that write.

Responsibility:
    Provides the common constructor and session-handling contract for the
    services in this package.  Services receive a SQLAlchemy ``Session`` and
    use ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit.  The orchestrator, the manual
      allocation handler, or the test harness owns commit/rollback.

Failure modes:
    - A subclass that commits breaks the all-or-nothing guarantee of an
      attribution run.
"""

from abc import ABC

from sqlalchemy.orm import Session

from attribution_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Guarantees:
        - The service never calls ``session.commit()``.
        - ``clock`` is always set; defaults to SystemClock.

    Non-goals:
        - Does NOT provide query-only (read) methods; those belong in
          ``attribution_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
