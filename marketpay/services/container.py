"""
Service wiring: one DocumentStore, TaskRunner and Stripe client pair shared by
every component, with the inventory hook registered on the store.
"""

import logging
from dataclasses import dataclass

from fastapi import Request

from marketpay.services.connect_service import ConnectService
from marketpay.services.document_store import DocumentStore
from marketpay.services.fee_retriever import FeeRetriever
from marketpay.services.inventory_hook import InventoryHook
from marketpay.services.notifier import Notifier
from marketpay.services.stripe_client import StripeClients
from marketpay.services.task_runner import TaskRunner
from marketpay.services.webhook_handler import WebhookHandler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    documents: DocumentStore
    clients: StripeClients
    notifier: Notifier
    task_runner: TaskRunner
    connect: ConnectService
    fee_retriever: FeeRetriever
    webhook: WebhookHandler
    inventory: InventoryHook


def build_services(
    documents: DocumentStore | None = None,
    clients: StripeClients | None = None,
    notifier: Notifier | None = None,
    task_runner: TaskRunner | None = None,
) -> Services:
    """Build the component graph; anything omitted comes from the environment."""
    documents = documents or DocumentStore()
    clients = clients or StripeClients.from_env()
    notifier = notifier or Notifier.from_env()
    task_runner = task_runner or TaskRunner()

    fee_retriever = FeeRetriever(documents, clients, task_runner)
    inventory = InventoryHook(documents, task_runner)
    inventory.register()

    return Services(
        documents=documents,
        clients=clients,
        notifier=notifier,
        task_runner=task_runner,
        connect=ConnectService(clients),
        fee_retriever=fee_retriever,
        webhook=WebhookHandler(documents, clients, fee_retriever, notifier),
        inventory=inventory,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency: the services attached to the running app."""
    return request.app.state.services
