"""
Service wiring for route handlers.

Tests override these with ``app.dependency_overrides`` or by replacing
``app.state.dispatch_queue``.
"""
from fastapi import Depends, Request

from app.db.database import SessionFactory, get_session_factory
from app.domain.services.admission_service import AdmissionService
from app.domain.services.webhook_reconciler import WebhookReconciler
from app.workers.dispatch_queue import DispatchQueue


def get_dispatch_queue(request: Request) -> DispatchQueue:
    return request.app.state.dispatch_queue


def get_admission_service(
    session_factory: SessionFactory = Depends(get_session_factory),
    dispatch_queue: DispatchQueue = Depends(get_dispatch_queue),
) -> AdmissionService:
    return AdmissionService(session_factory, dispatch_queue)


def get_webhook_reconciler(
    session_factory: SessionFactory = Depends(get_session_factory),
) -> WebhookReconciler:
    return WebhookReconciler(session_factory)
