"""FastAPI dependencies resolving services from the application container."""
from fastapi import Depends, Request

from hotspot_billing.config import Settings
from hotspot_billing.container import ServiceContainer
from hotspot_billing.core.initiator import PaymentInitiator
from hotspot_billing.core.reconciler import CallbackReconciler
from hotspot_billing.core.reporting import ReportingService
from hotspot_billing.monitoring.health import HealthCheck
from hotspot_billing.workers.pending_sweeper import PendingPaymentSweeper


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_settings_dependency(container: ServiceContainer = Depends(get_container)) -> Settings:
    return container.settings


def get_initiator(container: ServiceContainer = Depends(get_container)) -> PaymentInitiator:
    return container.initiator


def get_reconciler(container: ServiceContainer = Depends(get_container)) -> CallbackReconciler:
    return container.reconciler


def get_reporting(container: ServiceContainer = Depends(get_container)) -> ReportingService:
    return container.reporting


def get_sweeper(container: ServiceContainer = Depends(get_container)) -> PendingPaymentSweeper:
    return container.sweeper


def get_health_check(container: ServiceContainer = Depends(get_container)) -> HealthCheck:
    return container.health
