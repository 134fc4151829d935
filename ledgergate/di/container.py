"""Dependency injection container for gateway services."""
from typing import Optional

import httpx

from ledgergate.core.config import GatewaySettings, load_credentials
from ledgergate.core.database import ChangeStore
from ledgergate.services.approval import ApprovalCoordinator
from ledgergate.services.capture import CaptureInterceptor
from ledgergate.services.executor import Executor
from ledgergate.services.payload_transformer import PayloadTransformer
from ledgergate.services.signing import SigningService


class ServiceContainer:
    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client
        self._store = None
        self._signer = None
        self._transformer = None
        self._executor = None
        self._capture = None
        self._approvals = None

    def configure(
        self,
        settings: Optional[GatewaySettings] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        """Drop every built service; the next accessor call rebuilds it."""
        if self._store:
            self._store.close()
        self.__init__(settings=settings, http_client=http_client)

    def settings(self) -> GatewaySettings:
        if not self._settings:
            self._settings = GatewaySettings.from_env()
        return self._settings

    def store(self) -> ChangeStore:
        if not self._store:
            self._store = ChangeStore(self.settings().db_path)
        return self._store

    def signer(self) -> SigningService:
        if not self._signer:
            self._signer = SigningService()
        return self._signer

    def transformer(self) -> PayloadTransformer:
        if not self._transformer:
            self._transformer = PayloadTransformer(base_currency=self.settings().base_currency)
        return self._transformer

    def executor(self) -> Executor:
        if not self._executor:
            settings = self.settings()
            self._executor = Executor(
                signer=self.signer(),
                transformer=self.transformer(),
                credentials_provider=load_credentials,
                path_prefix=settings.path_prefix,
                timeout=settings.downstream_timeout,
                client=self._http_client,
            )
        return self._executor

    def capture(self) -> CaptureInterceptor:
        if not self._capture:
            self._capture = CaptureInterceptor(store=self.store())
        return self._capture

    def approvals(self) -> ApprovalCoordinator:
        if not self._approvals:
            self._approvals = ApprovalCoordinator(store=self.store(), executor=self.executor())
        return self._approvals


container = ServiceContainer()
