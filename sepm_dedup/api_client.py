import os
import ssl
import time
import json
import logging
import urllib.request
import urllib.error
import urllib.parse
import http.client
from typing import List, Dict, Any, Optional

from sepm_dedup.errors import AuthenticationFailure, FetchFailure, DeletionFailure, LogoutFailure

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

API_PREFIX = "/sepm/api/v1"

_TRANSPORT_ERRORS = (urllib.error.URLError, http.client.HTTPException, OSError, ValueError)


def build_ssl_context(verify: bool = True, ca_bundle: Optional[str] = None) -> ssl.SSLContext:
    """Certificate validation is on unless explicitly disabled."""
    if not verify:
        logger.warning("[tls] certificate verification DISABLED; server identity is not checked")
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx
    return ssl.create_default_context(cafile=ca_bundle)


class SepmApiClient:
    """
    SEPM REST API client (session, paginated computer listing, deletes).
    """

    def __init__(self,
                 host: str,
                 username: str,
                 password: str,
                 port: int = 8446,
                 domain: str = "",
                 page_size: int = 1000,
                 request_timeout: int = 30,
                 verify_tls: bool = True,
                 ca_bundle: Optional[str] = None,
                 max_pages: int = 10000):
        self.base_url = f"https://{host}:{port}"
        self.username = username
        self.password = password
        self.domain = domain or ""
        self.page_size = page_size
        self.request_timeout = request_timeout
        self.max_pages = max_pages
        self._ssl_context = build_ssl_context(verify_tls, ca_bundle)

        self._access_token: Optional[str] = None

        self.min_interval = float(os.getenv("SEPM_MIN_REQUEST_INTERVAL_SEC", "0"))  # base throttle
        self._last_request_ts = 0.0

    @property
    def authenticated(self) -> bool:
        return self._access_token is not None

    # ---------- Session ----------
    def authenticate(self) -> None:
        if not self.password:
            raise AuthenticationFailure("Missing password for SEPM login")
        body = {"username": self.username, "password": self.password, "domain": self.domain}
        try:
            js = self._post_json("/identity/authenticate", body, auth=False)
        except _TRANSPORT_ERRORS as e:
            raise AuthenticationFailure(f"Login failed for user={self.username}: {_describe(e)}") from e
        token = js.get("token") if isinstance(js, dict) else None
        if not token:
            raise AuthenticationFailure(f"Login response carried no token (url={self.base_url})")
        self._access_token = token
        logger.info(f"[auth] Authenticated user={self.username} domain={self.domain or '<default>'}")

    def logout(self) -> None:
        if not self._access_token:
            return
        body = {"token": self._access_token, "username": self.username}
        try:
            self._post_json("/identity/logout", body)
        except _TRANSPORT_ERRORS as e:
            raise LogoutFailure(f"Logout failed: {_describe(e)}") from e
        finally:
            self._access_token = None
        logger.info("[logout] Session closed")

    # ---------- Inventory ----------
    def list_page(self, page_index: int, page_size: Optional[int] = None) -> Dict[str, Any]:
        """Fetch one inventory page; page_index is 1-based."""
        params = {"pageIndex": page_index, "pageSize": page_size or self.page_size}
        try:
            js = self._get_json("/computers", params)
        except _TRANSPORT_ERRORS as e:
            raise FetchFailure(f"Page {page_index} request failed: {_describe(e)}") from e
        if not isinstance(js, dict):
            raise FetchFailure(f"Page {page_index} returned unexpected payload type {type(js).__name__}")
        return js

    def list_all_computers(self) -> List[Dict[str, Any]]:
        """Accumulate every page until the server-reported total is reached.

        An empty first page ends the walk with an empty inventory. An empty
        page after that, while still short of the total, is treated as a
        failure: grouping against a partial inventory is never safe.
        """
        collected: List[Dict[str, Any]] = []
        page = 0
        total: Optional[int] = None
        while True:
            page += 1
            if page > self.max_pages:
                raise FetchFailure(
                    f"Hit max_pages={self.max_pages} with {len(collected)}/{total} records collected"
                )
            js = self.list_page(page)
            items = js.get("content") or []
            try:
                total = int(js.get("totalElements", 0) or 0)
            except (TypeError, ValueError) as e:
                raise FetchFailure(f"Page {page} totalElements is not a number: {js.get('totalElements')!r}") from e
            if not items:
                if page == 1:
                    logger.info(f"[fetch] empty first page (totalElements={total}); nothing to process")
                    break
                raise FetchFailure(
                    f"Empty page {page} with {len(collected)}/{total} records collected"
                )
            collected.extend(items)
            logger.info(f"[fetch] page={page} raw={len(items)} collected={len(collected)} total={total}")
            if len(collected) >= total:
                logger.info(f"[fetch] pagination complete pages={page}")
                break
        return collected

    def delete_computer(self, unique_id: str) -> None:
        if unique_id is None or str(unique_id).strip() == "":
            raise DeletionFailure(f"Refusing delete without a uniqueId (got {unique_id!r})")
        endpoint = f"/computers/{urllib.parse.quote(str(unique_id), safe='')}"
        req = urllib.request.Request(self._url(endpoint), headers=self._headers(), method="DELETE")
        try:
            self._do_request(req)
        except _TRANSPORT_ERRORS as e:
            raise DeletionFailure(f"Delete failed for id={unique_id}: {_describe(e)}") from e

    # ---------- Core HTTP ----------
    def _url(self, endpoint: str, params: Dict[str, Any] = None) -> str:
        url = f"{self.base_url}{API_PREFIX}{endpoint}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params, doseq=True)}"
        return url

    def _headers(self, auth: bool = True) -> Dict[str, str]:
        h = {"Accept": "application/json"}
        if auth and self._access_token:
            h["Authorization"] = f"Bearer {self._access_token}"
        return h

    def _do_request(self, req: urllib.request.Request) -> bytes:
        # Simple token bucket: enforce min interval
        now = time.time()
        wait = self.min_interval - (now - self._last_request_ts)
        if wait > 0:
            time.sleep(wait)
        self._last_request_ts = time.time()
        try:
            with urllib.request.urlopen(req, timeout=self.request_timeout, context=self._ssl_context) as resp:
                return resp.read()
        except urllib.error.HTTPError as e:
            body = e.read().decode(errors="ignore")
            logger.warning(f"[http] {e.code} method={req.get_method()} url={req.full_url} body={body[:300]}")
            raise

    def _get_json(self, endpoint: str, params: Dict[str, Any] = None):
        req = urllib.request.Request(self._url(endpoint, params), headers=self._headers())
        raw = self._do_request(req)
        return json.loads(raw.decode())

    def _post_json(self, endpoint: str, body: Dict[str, Any], auth: bool = True):
        headers = self._headers(auth)
        headers["Content-Type"] = "application/json"
        req = urllib.request.Request(
            self._url(endpoint),
            method="POST",
            data=json.dumps(body).encode(),
            headers=headers
        )
        raw = self._do_request(req)
        if not raw.strip():
            return {}
        return json.loads(raw.decode())


def _describe(err: Exception) -> str:
    if isinstance(err, urllib.error.HTTPError):
        return f"HTTP {err.code} {err.reason}"
    if isinstance(err, urllib.error.URLError):
        return str(err.reason)
    if isinstance(err, http.client.HTTPException):
        return f"{type(err).__name__}: {err}"
    return str(err)


__all__ = ["SepmApiClient", "build_ssl_context"]
