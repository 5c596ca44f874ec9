"""
Identity Resolution and the Shared Key Cache

Turns a proof's verificationMethod into public key material.

LAYERS:
1. HttpDidDocumentFetcher - fetches DID documents (did:plc, did:web) over HTTP
2. DidKeyResolver         - picks the verification method and decodes its key
                            (did:key is decoded locally, no network)
3. IdentityResolverCache  - bounded, shared, thread-safe memo in front of 2

CACHE POLICY:
- Successes are cached indefinitely, capped by LRU eviction
- Failures are cached for a short TTL (no resolution storms, no permanent
  blacklisting of a transient outage)
- Concurrent misses on one identity share a single upstream call
- Transient errors are retried with exponential backoff inside a total
  time budget, then reported as a failure
- invalidate() drops an identity so the next resolve goes upstream

CONFIGURATION:
- CLAIMVIEW_RESOLVER_CACHE_SIZE: Max cached identities (default: 1000)
- CLAIMVIEW_RESOLVER_FAILURE_TTL: Seconds a failure is remembered (default: 60)
- CLAIMVIEW_RESOLVER_TIMEOUT: Total seconds per resolution (default: 5)
- CLAIMVIEW_RESOLVER_RETRIES: Retries after the first attempt (default: 2)
- CLAIMVIEW_RESOLVER_BACKOFF: First backoff delay in seconds (default: 0.5)
- CLAIMVIEW_PLC_URL: PLC directory base URL (default: https://plc.directory)
"""

import os
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import unquote

import httpx
from cachetools import LRUCache, TTLCache

from ..observability import get_logger, get_metrics
from .encoding import EncodingError, decode_multikey


logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class ResolutionError(Exception):
    """Transient resolution failure (network, upstream 5xx). Retried."""
    pass


class ResolutionTimeout(ResolutionError):
    """Resolution did not complete in time. Retried."""
    pass


class IdentityNotFound(Exception):
    """The identity or its key does not exist. Not retried."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class KeyMaterial:
    """A resolved public key."""
    key_type: str       # Ed25519, P-256, secp256k1
    public_key: bytes   # Raw key bytes (compressed point for EC keys)
    controller: str     # DID that controls the key
    method_id: str      # Full verification method id


@dataclass
class ResolverConfig:
    """Configuration for identity resolution."""
    max_size: int = 1000
    failure_ttl: float = 60.0
    timeout: float = 5.0
    retries: int = 2
    backoff: float = 0.5
    plc_url: str = "https://plc.directory"

    @classmethod
    def from_env(cls) -> "ResolverConfig":
        """Load configuration from environment variables."""
        return cls(
            max_size=int(os.environ.get("CLAIMVIEW_RESOLVER_CACHE_SIZE", "1000")),
            failure_ttl=float(os.environ.get("CLAIMVIEW_RESOLVER_FAILURE_TTL", "60")),
            timeout=float(os.environ.get("CLAIMVIEW_RESOLVER_TIMEOUT", "5")),
            retries=int(os.environ.get("CLAIMVIEW_RESOLVER_RETRIES", "2")),
            backoff=float(os.environ.get("CLAIMVIEW_RESOLVER_BACKOFF", "0.5")),
            plc_url=os.environ.get("CLAIMVIEW_PLC_URL", "https://plc.directory"),
        )


# ============================================================
# DOCUMENT FETCHING (external collaborator boundary)
# ============================================================

class HttpDidDocumentFetcher:
    """
    Fetches DID documents over HTTP.

    Supports:
    - did:plc:<id>      -> {plc_url}/did:plc:<id>
    - did:web:<host>    -> https://<host>/.well-known/did.json
    - did:web:<host>:p  -> https://<host>/p/did.json
    """

    def __init__(self, config: Optional[ResolverConfig] = None, client: Optional[httpx.Client] = None):
        self._config = config or ResolverConfig()
        self._client = client or httpx.Client(
            timeout=self._config.timeout,
            follow_redirects=True,
            headers={"Accept": "application/did+json, application/json"},
        )

    def document_url(self, did: str) -> str:
        if did.startswith("did:plc:"):
            return f"{self._config.plc_url.rstrip('/')}/{did}"
        if did.startswith("did:web:"):
            parts = [unquote(p) for p in did[len("did:web:"):].split(":")]
            if not parts[0]:
                raise IdentityNotFound(f"malformed did:web {did}")
            if len(parts) == 1:
                return f"https://{parts[0]}/.well-known/did.json"
            return f"https://{parts[0]}/{'/'.join(parts[1:])}/did.json"
        raise IdentityNotFound(f"unsupported DID method: {did}")

    def __call__(self, did: str) -> Dict[str, Any]:
        url = self.document_url(did)
        try:
            response = self._client.get(url)
        except httpx.TimeoutException as e:
            raise ResolutionTimeout(f"timed out fetching {url}") from e
        except httpx.HTTPError as e:
            raise ResolutionError(f"error fetching {url}: {e}") from e

        if response.status_code in (404, 410):
            raise IdentityNotFound(f"{did} not found ({response.status_code})")
        if response.status_code >= 400:
            raise ResolutionError(f"{url} returned {response.status_code}")

        try:
            document = response.json()
        except ValueError as e:
            raise ResolutionError(f"{url} returned invalid JSON") from e
        if not isinstance(document, dict):
            raise ResolutionError(f"{url} returned a non-object document")
        return document

    def close(self) -> None:
        self._client.close()


# ============================================================
# RAW RESOLUTION
# ============================================================

class DidKeyResolver:
    """
    Resolves a verification method string to KeyMaterial.

    did:key identities carry their key and never touch the network.
    Everything else goes through the document fetcher.
    """

    def __init__(self, fetch_document: Optional[Callable[[str], Dict[str, Any]]] = None):
        self._fetch_document = fetch_document

    def __call__(self, identity: str) -> KeyMaterial:
        did, _, fragment = identity.partition("#")
        if did.startswith("did:key:"):
            return self._resolve_did_key(identity, did)

        if self._fetch_document is None:
            raise IdentityNotFound(f"no document fetcher for {did}")

        document = self._fetch_document(did)
        method = self._select_method(document, did, fragment)
        if method is None:
            raise IdentityNotFound(f"no verification method {identity}")

        encoded = method.get("publicKeyMultibase")
        if not encoded:
            raise IdentityNotFound(f"verification method {identity} has no publicKeyMultibase")
        try:
            key_type, public_key = decode_multikey(encoded)
        except EncodingError as e:
            raise IdentityNotFound(f"undecodable key for {identity}: {e}") from e

        return KeyMaterial(
            key_type=key_type,
            public_key=public_key,
            controller=method.get("controller", did),
            method_id=identity,
        )

    @staticmethod
    def _resolve_did_key(identity: str, did: str) -> KeyMaterial:
        try:
            key_type, public_key = decode_multikey(did[len("did:key:"):])
        except EncodingError as e:
            raise IdentityNotFound(f"malformed did:key {did}: {e}") from e
        return KeyMaterial(
            key_type=key_type,
            public_key=public_key,
            controller=did,
            method_id=identity,
        )

    @staticmethod
    def _select_method(document: Dict[str, Any], did: str, fragment: str) -> Optional[Dict[str, Any]]:
        """
        Find the verification method a proof points at.

        Method ids may be absolute ("did:x#key") or relative ("#key").
        With no fragment, the first method is used.
        """
        methods = document.get("verificationMethod") or []
        methods = [m for m in methods if isinstance(m, dict)]
        if not fragment:
            return methods[0] if methods else None
        wanted = {f"{did}#{fragment}", f"#{fragment}"}
        for method in methods:
            if method.get("id") in wanted:
                return method
        return None


# ============================================================
# SHARED CACHE
# ============================================================

class _CountingLRUCache(LRUCache):
    """LRUCache that counts entries dropped to stay under maxsize."""

    def __init__(self, maxsize: int):
        super().__init__(maxsize=maxsize)
        self.evictions = 0

    def popitem(self):
        item = super().popitem()
        self.evictions += 1
        return item


class IdentityResolverCache:
    """
    Bounded, shared memo of identity -> KeyMaterial.

    THREAD SAFETY:
    Both caches are only touched under the lock. Upstream resolution runs
    outside the lock, so a slow identity never stalls lookups of other
    identities. Concurrent misses on one identity share a single upstream
    call: the first caller resolves, the others wait on its future.

    Passed explicitly to whatever needs it; there is no module-level instance.
    """

    def __init__(
        self,
        resolve: Callable[[str], KeyMaterial],
        config: Optional[ResolverConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            resolve: Raw resolver; raises ResolutionError / IdentityNotFound
            config: Cache and retry policy (or loads from environment)
            clock: Monotonic clock (injectable for tests)
            sleep: Backoff sleep (injectable for tests)
        """
        self._resolve = resolve
        self._config = config or ResolverConfig.from_env()
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._positive = _CountingLRUCache(maxsize=self._config.max_size)
        self._negative = TTLCache(
            maxsize=self._config.max_size,
            ttl=self._config.failure_ttl,
            timer=clock,
        )
        self._inflight: Dict[str, Future] = {}

        self._hits = 0
        self._misses = 0

    @property
    def config(self) -> ResolverConfig:
        return self._config

    def resolve(self, identity: str) -> Optional[KeyMaterial]:
        """
        Resolve an identity to key material.

        Returns:
            KeyMaterial, or None if the identity could not be resolved
            (not found, or transient failure after retries)
        """
        with self._lock:
            cached, found = self._lookup(identity)
            if found:
                return cached
            pending = self._inflight.get(identity)
            if pending is None:
                pending = self._inflight[identity] = Future()
                leader = True
            else:
                leader = False

        if not leader:
            try:
                return pending.result(timeout=self._config.timeout)
            except FutureTimeout:
                logger.warning("Timed out waiting for in-flight resolution", identity=identity)
                return None

        try:
            key = self._resolve_with_retry(identity)
        except Exception as e:
            with self._lock:
                self._inflight.pop(identity, None)
            pending.set_exception(e)
            raise

        with self._lock:
            if key is not None:
                self._positive[identity] = key
                self._negative.pop(identity, None)
            else:
                self._negative[identity] = True
            self._inflight.pop(identity, None)
        pending.set_result(key)
        return key

    def _lookup(self, identity: str) -> tuple[Optional[KeyMaterial], bool]:
        """Returns (value, found). A live negative entry is found with value None. Caller holds the lock."""
        metrics = get_metrics()
        key = self._positive.get(identity)
        if key is not None:
            self._hits += 1
            metrics.record_resolver(hit=True)
            return key, True

        if identity in self._negative:
            self._hits += 1
            metrics.record_resolver(hit=True)
            return None, True

        self._misses += 1
        metrics.record_resolver(hit=False)
        return None, False

    def _resolve_with_retry(self, identity: str) -> Optional[KeyMaterial]:
        """Bounded retries with exponential backoff inside the timeout budget."""
        deadline = self._clock() + self._config.timeout
        attempts = self._config.retries + 1

        for attempt in range(attempts):
            try:
                return self._resolve(identity)
            except IdentityNotFound as e:
                logger.info("Identity not found", identity=identity, reason=str(e))
                return None
            except ResolutionError as e:
                delay = self._config.backoff * (2 ** attempt)
                last_attempt = attempt == attempts - 1
                out_of_time = self._clock() + delay >= deadline
                logger.warning(
                    "Identity resolution failed",
                    identity=identity,
                    attempt=attempt + 1,
                    timeout=isinstance(e, ResolutionTimeout),
                    error=str(e),
                )
                if last_attempt or out_of_time:
                    return None
                self._sleep(delay)
        return None

    def invalidate(self, identity: str) -> bool:
        """
        Forget an identity (e.g. its key was rotated or revoked).

        Returns:
            True if anything was cached for it
        """
        with self._lock:
            had_positive = self._positive.pop(identity, None) is not None
            had_negative = self._negative.pop(identity, None) is not None
        return had_positive or had_negative

    def __len__(self) -> int:
        with self._lock:
            return len(self._positive)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            self._negative.expire()
            return {
                "size": len(self._positive),
                "negative_size": len(self._negative),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._positive.evictions,
            }
