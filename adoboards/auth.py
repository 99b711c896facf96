from __future__ import annotations

import base64
import json
import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TypeVar

from .errors import AuthError

logger = logging.getLogger('adoboards')

# Azure DevOps application id, used as the resource when asking az for a token
ADO_RESOURCE_ID = "499b84ac-1321-427f-aa17-267ca6975798"
TOKEN_ENV_VAR = "ADO_TOKEN"
# refresh CLI tokens a little before they really expire
EXPIRY_MARGIN_SECONDS = 60

T = TypeVar("T")


@dataclass(frozen=True)
class Token:
    value: str
    scheme: str = "Bearer"              # "Bearer" (az session) or "Basic" (PAT)
    expires_at: Optional[float] = None  # epoch seconds
    source: str = ""

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at - EXPIRY_MARGIN_SECONDS

    def authorization(self) -> str:
        if self.scheme == "Basic":
            raw = base64.b64encode(f":{self.value}".encode("utf-8")).decode("ascii")
            return f"Basic {raw}"
        return f"Bearer {self.value}"

    def __repr__(self) -> str:
        return f"Token(scheme={self.scheme!r}, source={self.source!r}, expires_at={self.expires_at!r})"


# -----------------------------
# Strategies
# -----------------------------
def _parse_az_expiry(payload: dict) -> Optional[float]:
    raw = payload.get("expires_on")
    if raw is not None:
        try:
            return float(raw)
        except (TypeError, ValueError):
            pass
    text = payload.get("expiresOn")
    if text:
        # az prints local time without an offset
        try:
            return time.mktime(time.strptime(text.split(".")[0], "%Y-%m-%d %H:%M:%S"))
        except ValueError:
            return None
    return None


class AzureCliStrategy:
    """Delegate to an existing `az login` session."""

    name = "azure-cli"

    def __init__(self, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run, timeout: float = 30.0):
        self._runner = runner
        self._timeout = timeout

    def __call__(self) -> Optional[Token]:
        az = shutil.which("az") or shutil.which("az.cmd")
        if not az:
            logger.debug("az CLI not found on PATH")
            return None
        cmd = [az, "account", "get-access-token", "--resource", ADO_RESOURCE_ID, "--output", "json"]
        try:
            completed = self._runner(cmd, capture_output=True, text=True, timeout=self._timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise AuthError(f"az get-access-token failed: {exc}") from exc
        if completed.returncode != 0:
            detail = (completed.stderr or "").strip().splitlines()
            raise AuthError(f"az get-access-token failed: {detail[-1] if detail else completed.returncode}")
        try:
            payload = json.loads(completed.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise AuthError("az get-access-token returned invalid JSON") from exc
        value = payload.get("accessToken")
        if not value:
            raise AuthError("az get-access-token returned no accessToken")
        return Token(value=value, scheme="Bearer", expires_at=_parse_az_expiry(payload), source=self.name)


def load_dotenv_token(var: str = TOKEN_ENV_VAR, directory: Optional[str] = None) -> Optional[str]:
    """Read `var` from a .env file in the working directory if present."""
    path = os.path.join(directory or os.getcwd(), ".env")
    if not os.path.isfile(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            k, v = line.split('=', 1)
            if k.strip() == var:
                v = v.strip().strip('"').strip("'")
                if v:
                    return v
    return None


class StaticTokenStrategy:
    """Personal access token from $ADO_TOKEN or .env."""

    name = "pat"

    def __init__(self, var: str = TOKEN_ENV_VAR, dotenv_dir: Optional[str] = None):
        self._var = var
        self._dotenv_dir = dotenv_dir

    def __call__(self) -> Optional[Token]:
        value = os.environ.get(self._var) or load_dotenv_token(self._var, self._dotenv_dir)
        if not value:
            return None
        return Token(value=value, scheme="Basic", source=self.name)


# -----------------------------
# Resolver
# -----------------------------
class CredentialResolver:
    """Resolve and cache the token shared by every fetch worker.

    Resolution and invalidation happen under one lock. A worker that hits an auth
    failure only drops the token it actually used, so several boards failing
    at once trigger a single re-resolution.
    """

    def __init__(self, strategies: Optional[Sequence[Callable[[], Optional[Token]]]] = None,
                 clock: Callable[[], float] = time.time):
        self._strategies: List[Callable[[], Optional[Token]]] = list(
            strategies if strategies is not None else (AzureCliStrategy(), StaticTokenStrategy())
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[Token] = None
        self.resolutions = 0

    def resolve(self) -> Token:
        """Run the strategies in order and return the first token found."""
        self.resolutions += 1
        errors: List[str] = []
        for strategy in self._strategies:
            name = getattr(strategy, "name", type(strategy).__name__)
            try:
                token = strategy()
            except AuthError as exc:
                logger.info("Credential strategy %s failed: %s", name, exc)
                errors.append(str(exc))
                continue
            if token is not None:
                logger.info("Authenticated using %s", name)
                return token
        detail = "; ".join(errors) if errors else f"run `az login` or set ${TOKEN_ENV_VAR}"
        raise AuthError(f"No usable credential ({detail})")

    def current_token(self) -> Token:
        with self._lock:
            if self._token is None or self._token.expired(self._clock()):
                self._token = self.resolve()
            return self._token

    def invalidate(self, stale: Token) -> None:
        with self._lock:
            if self._token is not None and self._token == stale:
                logger.info("Dropping rejected %s token", stale.source or stale.scheme)
                self._token = None

    def call(self, request: Callable[[Token], T]) -> T:
        """Run `request` with the current token, re-resolving once on AuthError."""
        token = self.current_token()
        try:
            return request(token)
        except AuthError as exc:
            logger.warning("Request rejected (%s); re-resolving credentials", exc)
            self.invalidate(token)
        token = self.current_token()
        try:
            return request(token)
        except AuthError as exc:
            raise AuthError(f"Unauthenticated: {exc}", exc.status) from exc
