"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session-handling contract for every service in
    the kernel layer.  Services receive a SQLAlchemy ``Session`` and use
    ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services.  Every write service in ``retail_kernel/services/``
    extends this class.

Invariants enforced:
    - Transaction boundaries: services flush (or release a savepoint) within
      the caller's transaction and never commit or roll back the outer
      transaction.  The orchestrator or ``session_scope`` owns
      commit/rollback, which is what makes a POS receipt (stock issue +
      journal + receipt row) all-or-nothing.
"""

from abc import ABC

from sqlalchemy.orm import Session

from retail_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()`` on the caller's transaction.

    Non-goals:
        - Read-only queries belong in ``retail_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
