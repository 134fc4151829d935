# Lazy imports so `ledgergate.services.errors` can load without httpx or sqlite setup
def __getattr__(name):
    if name == "ApprovalCoordinator":
        from ledgergate.services.approval import ApprovalCoordinator
        return ApprovalCoordinator
    elif name == "CaptureInterceptor":
        from ledgergate.services.capture import CaptureInterceptor
        return CaptureInterceptor
    elif name == "Executor":
        from ledgergate.services.executor import Executor
        return Executor
    elif name == "PayloadTransformer":
        from ledgergate.services.payload_transformer import PayloadTransformer
        return PayloadTransformer
    elif name == "SigningService":
        from ledgergate.services.signing import SigningService
        return SigningService
    raise AttributeError(f"module 'ledgergate.services' has no attribute '{name}'")

__all__ = [
    "ApprovalCoordinator",
    "CaptureInterceptor",
    "Executor",
    "PayloadTransformer",
    "SigningService",
]
