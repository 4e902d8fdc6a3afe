"""Report delivery — dispatcher, job store, Webex executor, audit trail.

Learn: The dispatcher only knows the three interfaces in base.py:

    store = SqlDeliveryJobStore(async_session_factory)
    executor = WebexDeliveryService(async_session_factory)
    audit = DeliveryAuditRecorder(async_session_factory)
    dispatcher = DeliveryDispatcher(store, executor, audit)
"""

from intelrelay.delivery.base import AuditSink, DeliveryExecutor, DeliveryJobStore
from intelrelay.delivery.dispatcher import DeliveryDispatcher, DispatcherConfig
from intelrelay.delivery.types import DeliveryJob, DeliveryResult, DeliveryStatus

__all__ = [
    "AuditSink",
    "DeliveryDispatcher",
    "DeliveryExecutor",
    "DeliveryJob",
    "DeliveryJobStore",
    "DeliveryResult",
    "DeliveryStatus",
    "DispatcherConfig",
]
