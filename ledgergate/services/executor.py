"""
Replays approved changes against the downstream accounting API.

The executor never touches the change store; recording the outcome is the
ApprovalCoordinator's job.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from ledgergate.core.config import ApiCredentials, load_credentials
from ledgergate.core.models import Change
from ledgergate.services.errors import ConfigurationError, UpstreamError
from ledgergate.services.payload_transformer import PayloadTransformer, family_for_path
from ledgergate.services.signing import SigningService

logger = logging.getLogger(__name__)

# Never replayed: transport-level, gateway-only, or replaced by fresh values
_DROPPED_HEADERS = {
    "host",
    "content-length",
    "content-type",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "upgrade",
    "te",
    "trailer",
    "proxy-authorization",
    "proxy-connection",
    "accept-encoding",
    "authorization",
    "cookie",
    "x-api-key",
    "x-changeset-id",
    "x-auth-querytime",
    "x-auth-key",
}


def _query_params(query: Mapping[str, Any]) -> List[Tuple[str, str]]:
    params: List[Tuple[str, str]] = []
    for key, value in (query or {}).items():
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if item:
                params.append((str(key), str(item)))
    return params


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class Executor:
    def __init__(
        self,
        signer: SigningService,
        transformer: PayloadTransformer,
        credentials_provider: Callable[[], ApiCredentials] = load_credentials,
        path_prefix: str = "/proxy",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.signer = signer
        self.transformer = transformer
        self.credentials_provider = credentials_provider
        self.path_prefix = path_prefix.rstrip("/")
        self.timeout = timeout
        self._client = client

    def ensure_configured(self) -> ApiCredentials:
        credentials = self.credentials_provider()
        if not credentials.is_configured:
            raise ConfigurationError(f"Missing {', '.join(credentials.missing_fields())}")
        return credentials

    def build_url(self, path: str, base_url: str) -> Tuple[str, str]:
        """
        Map a captured path onto the downstream base URL.

        Returns (absolute url, path to sign). /proxy/v1/journals and /journals
        both map to <base>/journals with signed path /v1/journals when the
        base URL ends in /v1.
        """
        api_path = path.split("?", 1)[0]
        if self.path_prefix and (api_path == self.path_prefix or api_path.startswith(self.path_prefix + "/")):
            api_path = api_path[len(self.path_prefix):]

        base = base_url.rstrip("/")
        base_path = urlsplit(base).path.rstrip("/")
        if base_path and (api_path == base_path or api_path.startswith(base_path + "/")):
            api_path = api_path[len(base_path):]

        api_path = "/" + api_path.lstrip("/")
        return base + api_path, base_path + api_path

    @staticmethod
    def outbound_headers(stored: Mapping[str, str], auth_headers: Mapping[str, str]) -> Dict[str, str]:
        headers = {
            str(k): str(v)
            for k, v in (stored or {}).items()
            if str(k).lower() not in _DROPPED_HEADERS
        }
        headers["Content-Type"] = "application/json"
        headers.update(auth_headers)
        return headers

    def execute(self, change: Change) -> Any:
        credentials = self.ensure_configured()
        url, sign_path = self.build_url(change.path, credentials.base_url)
        body = self.transformer.transform(family_for_path(change.path), change.body)
        signed = self.signer.sign(change.method, sign_path, credentials)
        headers = self.outbound_headers(change.headers, signed.as_headers())
        logger.info("Executing change %s: %s %s", change.id, change.method, url)
        return self._send(change.method, url, _query_params(change.query), headers, body)

    def forward_read(self, method: str, path: str, query: Optional[Mapping[str, Any]] = None) -> Any:
        """Signed pass-through for non-mutating requests."""
        credentials = self.ensure_configured()
        url, sign_path = self.build_url(path, credentials.base_url)
        signed = self.signer.sign(method, sign_path, credentials)
        headers = self.outbound_headers({}, signed.as_headers())
        return self._send(method.upper(), url, _query_params(query or {}), headers, None)

    def _send(
        self,
        method: str,
        url: str,
        params: List[Tuple[str, str]],
        headers: Dict[str, str],
        content: Optional[str],
    ) -> Any:
        try:
            if self._client is not None:
                response = self._client.request(
                    method, url, params=params, headers=headers, content=content, timeout=self.timeout
                )
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.request(method, url, params=params, headers=headers, content=content)
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"{method} {url} timed out after {self.timeout}s", timed_out=True) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"{method} {url} failed: {exc}") from exc

        data = _decode(response)
        if not response.is_success:
            if data is None or isinstance(data, str):
                detail = data or ""
            else:
                detail = json.dumps(data)
            raise UpstreamError(detail or response.reason_phrase, downstream_status=response.status_code, body=data)
        return data
