"""
HTTP client for the Focus NFe API.

Authentication is HTTP Basic with the token as username and an empty
password. Every call has a bounded timeout; transport failures surface as
``TransportError`` so callers can record them against the document.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging
from urllib.parse import quote

import requests
from requests.auth import HTTPBasicAuth

from app.core.config import settings
from app.modules.fiscal.exceptions import TransportError
from app.modules.fiscal.models import DocType, Environment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderResponse:
    status_code: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def as_record(self) -> Dict[str, Any]:
        return {"http_status": self.status_code, "body": self.body}

    def field(self, name: str) -> Any:
        return self.body.get(name) if isinstance(self.body, dict) else None


def parse_body(response: requests.Response) -> Any:
    text = response.text
    if not text:
        return None
    try:
        return response.json()
    except ValueError:
        return {"raw": text}


class FocusNFeClient:

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        production_url: Optional[str] = None,
        sandbox_url: Optional[str] = None,
    ):
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else settings.FOCUSNFE_TIMEOUT_SECONDS
        self.production_url = (production_url or settings.FOCUSNFE_PRODUCTION_URL).rstrip("/")
        self.sandbox_url = (sandbox_url or settings.FOCUSNFE_SANDBOX_URL).rstrip("/")

    def base_url(self, environment: str) -> str:
        root = self.production_url if environment == Environment.PRODUCTION.value else self.sandbox_url
        return f"{root}/v2"

    def _request(self, method: str, url: str, token: str, **kwargs) -> ProviderResponse:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, auth=HTTPBasicAuth(token, ""), **kwargs)
        except requests.Timeout as e:
            logger.warning(f"Focus NFe {method} {url} timed out after {self.timeout}s")
            raise TransportError(f"Timeout after {self.timeout}s: {e}")
        except requests.RequestException as e:
            logger.warning(f"Focus NFe {method} {url} failed: {e}")
            raise TransportError(f"Could not reach provider: {e}")

        logger.debug(f"Focus NFe {method} {url} -> {response.status_code}")
        return ProviderResponse(status_code=response.status_code, body=parse_body(response))

    def submit_document(
        self, environment: str, token: str, doc_type: DocType, ref: str, payload: Dict[str, Any]
    ) -> ProviderResponse:
        url = f"{self.base_url(environment)}/{doc_type.endpoint}"
        return self._request("POST", url, token, params={"ref": ref}, json=payload)

    def fetch_status(
        self, environment: str, token: str, doc_type: DocType, ref: str, completa: Optional[str] = None
    ) -> ProviderResponse:
        url = f"{self.base_url(environment)}/{doc_type.endpoint}/{quote(ref, safe='')}"
        params = {"completa": completa} if completa else None
        return self._request("GET", url, token, params=params)

    def save_company(
        self, environment: str, token: str, empresa: Dict[str, Any], company_id: Optional[str] = None
    ) -> ProviderResponse:
        """Create the issuing company, or update it when the provider id is known"""
        url = f"{self.base_url(environment)}/empresas"
        if company_id:
            url = f"{url}/{quote(str(company_id), safe='')}"
            return self._request("PUT", url, token, json={"empresa": empresa})
        return self._request("POST", url, token, json={"empresa": empresa})
