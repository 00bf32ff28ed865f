"""REST provider.

Maps resource operations onto a JSON HTTP API:

    POST   {endpoint}/{type}        create, returns the object (with 'id')
    GET    {endpoint}/{type}/{id}   read, 404 means the object is gone
    PUT    {endpoint}/{type}/{id}   update, returns the object
    DELETE {endpoint}/{type}/{id}   delete, 404 is treated as already deleted

Connection errors, timeouts, 429 and 5xx responses are transient and
retried by the executor; other 4xx responses are fatal.
"""

import logging
import os
from typing import Any, Optional

import requests

from errors import ProviderError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = {408, 429}


class HttpProvider:
    """Provider backed by a REST API."""

    def __init__(
        self,
        endpoint: str,
        token_env: str = 'INFRA_PROVIDER_TOKEN',
        timeout: float = 30.0,
        verify_tls: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify_tls
        self.session.headers['Accept'] = 'application/json'
        if token := os.environ.get(token_env):
            self.session.headers['Authorization'] = f'Bearer {token}'

    def _url(self, resource_type: str, object_id: Optional[str] = None) -> str:
        if object_id is None:
            return f'{self.endpoint}/{resource_type}'
        return f'{self.endpoint}/{resource_type}/{object_id}'

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        logger.debug(f"{method} {url}")
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise ProviderError(f"{method} {url} timed out after {self.timeout}s", transient=True)
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"{method} {url} connection failed: {e}", transient=True)
        return resp

    @staticmethod
    def _raise_for_status(method: str, url: str, resp: requests.Response) -> None:
        if resp.status_code < 400:
            return
        transient = resp.status_code >= 500 or resp.status_code in TRANSIENT_STATUS
        detail = resp.text.strip()[:200] if resp.text else resp.reason
        raise ProviderError(
            f"{method} {url} returned {resp.status_code}: {detail}",
            transient=transient,
            status=resp.status_code,
        )

    @staticmethod
    def _json(method: str, url: str, resp: requests.Response) -> dict:
        try:
            data = resp.json()
        except ValueError:
            raise ProviderError(f"{method} {url} returned invalid JSON")
        if not isinstance(data, dict):
            raise ProviderError(f"{method} {url} returned {type(data).__name__}, expected object")
        return data

    @staticmethod
    def _object_id(outputs: dict) -> str:
        object_id = outputs.get('id')
        if not object_id:
            raise ProviderError("Resource outputs have no 'id'")
        return str(object_id)

    def create(self, resource_type: str, attributes: dict) -> dict:
        url = self._url(resource_type)
        resp = self._request('POST', url, json=attributes)
        self._raise_for_status('POST', url, resp)
        data = self._json('POST', url, resp)
        if 'id' not in data:
            raise ProviderError(f"POST {url} response has no 'id'")
        return {**attributes, **data}

    def read(self, resource_type: str, outputs: dict) -> Optional[dict]:
        url = self._url(resource_type, self._object_id(outputs))
        resp = self._request('GET', url)
        if resp.status_code == 404:
            return None
        self._raise_for_status('GET', url, resp)
        return self._json('GET', url, resp)

    def update(self, resource_type: str, outputs: dict, attributes: dict) -> dict:
        object_id = self._object_id(outputs)
        url = self._url(resource_type, object_id)
        resp = self._request('PUT', url, json=attributes)
        self._raise_for_status('PUT', url, resp)
        data = self._json('PUT', url, resp)
        return {**attributes, 'id': object_id, **data}

    def delete(self, resource_type: str, outputs: dict) -> None:
        url = self._url(resource_type, self._object_id(outputs))
        resp = self._request('DELETE', url)
        if resp.status_code == 404:
            logger.debug(f"{url} already deleted")
            return
        self._raise_for_status('DELETE', url, resp)
