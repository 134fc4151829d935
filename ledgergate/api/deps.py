"""FastAPI dependencies for gateway services."""
from ledgergate.di.container import container


def get_executor():
    return container.executor()


def get_capture():
    return container.capture()


def get_approvals():
    return container.approvals()
