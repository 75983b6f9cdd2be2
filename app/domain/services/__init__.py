"""
Domain Services
"""
from app.domain.services.admission_service import AdmissionService, AdmissionResult
from app.domain.services.dispatch_service import MessageDispatcher, DispatchOutcome, DispatchResult
from app.domain.services.message_service import MessageService
from app.domain.services.message_status import MessageStatusService
from app.domain.services.webhook_reconciler import WebhookReconciler, ReconcileReport

__all__ = [
    "AdmissionService",
    "AdmissionResult",
    "MessageDispatcher",
    "DispatchOutcome",
    "DispatchResult",
    "MessageService",
    "MessageStatusService",
    "WebhookReconciler",
    "ReconcileReport",
]
