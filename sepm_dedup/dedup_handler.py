"""Run orchestration for SEPM duplicate client cleanup.

- Logs in, fetches the full computer inventory (paginated)
- Groups by display name (or hardware key) and keeps the newest per group
- Deletes the rest unless running dry (the default)
- Always logs out once a session exists; logout failure is only a warning

Environment Variables (Lambda entry):
    SEPM_API_SECRET_ARN   Secrets Manager ARN with username/password[/domain/host/port]
    SEPM_HOST, SEPM_PORT (default 8446), SEPM_DOMAIN
    SEPM_DRY_RUN (default true)
    SEPM_DUP_THRESHOLD (default 2), SEPM_DUP_KEY (name|hardware)
    SEPM_PAGE_SIZE (default 1000), SEPM_DELETE_DELAY_SECONDS (default 1.3)
    SEPM_CA_BUNDLE, SEPM_INSECURE (default false), SEPM_REQUEST_TIMEOUT (default 30)
"""
import os, json, time, logging, base64
import getpass
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sepm_dedup.api_client import SepmApiClient
from sepm_dedup.dedup import (
    ClientRecord, DeletionExecutor, RunContext, RunResult, group_duplicates,
    DEFAULT_DELETE_DELAY_SECONDS, DEFAULT_THRESHOLD,
)
from sepm_dedup.errors import LogoutFailure

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_PORT = 8446
DEFAULT_PAGE_SIZE = 1000

_cached_secrets: Dict[str, Dict[str, Any]] = {}


def _as_bool(raw: Any, default: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None or str(raw).strip() == "":
        return default
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _env_bool(name: str, default: bool) -> bool:
    return _as_bool(os.getenv(name), default)


@dataclass
class DedupSettings:
    host: str
    username: str
    password: str = ""
    port: int = DEFAULT_PORT
    domain: str = ""
    dry_run: bool = True
    threshold: int = DEFAULT_THRESHOLD
    key_field: str = "name"
    page_size: int = DEFAULT_PAGE_SIZE
    delete_delay_seconds: float = DEFAULT_DELETE_DELAY_SECONDS
    verify_tls: bool = True
    ca_bundle: Optional[str] = None
    request_timeout: int = 30

    def __repr__(self) -> str:
        return (f"DedupSettings(host={self.host!r}, port={self.port}, username={self.username!r}, "
                f"dry_run={self.dry_run}, threshold={self.threshold}, key_field={self.key_field!r})")

    @classmethod
    def from_env(cls, secret: Optional[Dict[str, Any]] = None) -> "DedupSettings":
        secret = secret or {}
        host = secret.get("host") or os.getenv("SEPM_HOST")
        if not host:
            raise RuntimeError("Missing SEPM host (SEPM_HOST or secret 'host')")
        return cls(
            host=host,
            port=int(secret.get("port") or os.getenv("SEPM_PORT", str(DEFAULT_PORT))),
            username=secret.get("username") or os.getenv("SEPM_USERNAME") or getpass.getuser(),
            password=secret.get("password") or os.getenv("SEPM_PASSWORD", ""),
            domain=secret.get("domain") or os.getenv("SEPM_DOMAIN", ""),
            dry_run=_env_bool("SEPM_DRY_RUN", True),
            threshold=int(os.getenv("SEPM_DUP_THRESHOLD", str(DEFAULT_THRESHOLD))),
            key_field=os.getenv("SEPM_DUP_KEY", "name"),
            page_size=int(os.getenv("SEPM_PAGE_SIZE", str(DEFAULT_PAGE_SIZE))),
            delete_delay_seconds=float(os.getenv("SEPM_DELETE_DELAY_SECONDS", str(DEFAULT_DELETE_DELAY_SECONDS))),
            verify_tls=not _env_bool("SEPM_INSECURE", False),
            ca_bundle=os.getenv("SEPM_CA_BUNDLE") or None,
            request_timeout=int(os.getenv("SEPM_REQUEST_TIMEOUT", "30")),
        )


def build_client(settings: DedupSettings) -> SepmApiClient:
    return SepmApiClient(
        host=settings.host,
        port=settings.port,
        username=settings.username,
        password=settings.password,
        domain=settings.domain,
        page_size=settings.page_size,
        request_timeout=settings.request_timeout,
        verify_tls=settings.verify_tls,
        ca_bundle=settings.ca_bundle,
    )


def run_dedup(client: SepmApiClient, settings: DedupSettings) -> RunResult:
    """One pass: authenticate, fetch, group, retain/delete, logout.

    Fatal stage errors propagate after the session is closed.
    """
    ctx = RunContext(
        dry_run=settings.dry_run,
        threshold=settings.threshold,
        key_field=settings.key_field,
        delete_delay_seconds=settings.delete_delay_seconds,
    )
    mode = "DRY-RUN" if ctx.dry_run else "LIVE"
    logger.info(f"[run] starting mode={mode} host={settings.host}:{settings.port} threshold={ctx.threshold} key={ctx.key_field}")
    client.authenticate()
    try:
        raw = client.list_all_computers()
        ctx.records = [ClientRecord.from_api(r, i) for i, r in enumerate(raw)]
        logger.info(f"[fetch] records={len(ctx.records)}")

        groups = group_duplicates(ctx.records, ctx.threshold, ctx.key_field)
        if not groups:
            logger.info("[group] no duplicate groups over threshold; nothing to do")
            return ctx.result

        executor = DeletionExecutor(client.delete_computer, ctx)
        result = executor.process_all(groups)
        verb = "would delete" if ctx.dry_run else "deleted"
        count = len(result.by_action("would_delete")) if ctx.dry_run else result.deleted
        logger.info(f"[summary] groups={result.groups_found} {verb}={count} mode={mode}")
        return result
    finally:
        try:
            client.logout()
        except LogoutFailure as e:
            logger.warning(f"[logout] {e}")


def _get_secret_cached(arn: str) -> Dict[str, Any]:
    if arn in _cached_secrets:
        return _cached_secrets[arn]
    import boto3
    sm = boto3.client("secretsmanager")
    resp = sm.get_secret_value(SecretId=arn)
    if "SecretString" in resp:
        js = json.loads(resp["SecretString"])
    else:
        js = json.loads(base64.b64decode(resp["SecretBinary"]).decode())
    _cached_secrets[arn] = js
    return js


def lambda_handler(event, context):
    logger.info("[lambda_handler] invoked with event=%s", json.dumps(event or {})[:500])
    start = time.time()
    try:
        secret = None
        arn = os.getenv("SEPM_API_SECRET_ARN")
        if arn:
            secret = _get_secret_cached(arn)
            for key in ("username", "password"):
                if key not in secret:
                    raise RuntimeError(f"SEPM secret missing '{key}'")
        settings = DedupSettings.from_env(secret)
        if isinstance(event, dict) and "dry_run" in event:
            settings.dry_run = _as_bool(event["dry_run"], True)
        result = run_dedup(build_client(settings), settings)
        summary = {
            "groups_found": result.groups_found,
            "deleted": result.deleted,
            "would_delete": len(result.by_action("would_delete")),
            "dry_run": result.dry_run,
            "duration_sec": round(time.time() - start, 3),
        }
        logger.info(f"[summary] {json.dumps(summary, separators=(',', ':'))}")
        return {"statusCode": 200, "body": json.dumps(summary)}
    except Exception as e:
        logger.exception("Dedup run failed")
        stage = getattr(e, "stage", "setup")
        return {"statusCode": 500, "body": json.dumps({"error": str(e), "stage": stage})}
