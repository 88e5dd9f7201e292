from fastapi import Depends, Request

from .container import ApplicationContainer


def get_container(request: Request) -> ApplicationContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Application container not initialised.")
    return container


def get_settings(container: ApplicationContainer = Depends(get_container)):
    return container.settings


def get_lifecycle_manager(container: ApplicationContainer = Depends(get_container)):
    return container.lifecycle_manager


def get_webhook_reconciler(container: ApplicationContainer = Depends(get_container)):
    return container.webhook_reconciler


def get_scheduler(container: ApplicationContainer = Depends(get_container)):
    return container.scheduler
