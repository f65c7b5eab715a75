"""
Remote Catalog Client

Talks to the marketplace gateway: signed requests, product lookups,
changelogs and archive downloads for plugins, themes and the core.
"""

import base64
import hashlib
import hmac
import json
import logging
import platform
import time
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from extensionos.core.config import ExtensionOSConfig, get_config
from extensionos.core.extensions.archive import ArchiveExtractor, extract_archive
from extensionos.core.extensions.cache import ExtensionCache, MemoryCache
from extensionos.core.extensions.exceptions import ApplicationError, RemoteCatalogError
from extensionos.core.extensions.models import ExtensionKind

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3600
CHUNK_SIZE = 8192

PROTOCOL_VERSION = "1.1"
CLIENT_NAME = "extensionos"

REQUEST_PLUGIN_DETAIL = "plugin/detail"
REQUEST_PLUGIN_CONTENT = "plugin/content"
REQUEST_THEME_DETAIL = "theme/detail"
REQUEST_PROJECT_DETAIL = "project/detail"
VALID_REQUESTS = (
    REQUEST_PLUGIN_DETAIL,
    REQUEST_PLUGIN_CONTENT,
    REQUEST_THEME_DETAIL,
    REQUEST_PROJECT_DETAIL,
)

PRODUCT_CACHE_KEY = "extensionos.catalog.product-details"
PRODUCT_CACHE_TTL = 2 * 24 * 60 * 60
POPULAR_CACHE_TTL = 60 * 60
UNKNOWN_PRODUCT = -1

MSG_NOT_FOUND = "Response not found"
MSG_EMPTY = "Empty response from the server"
MSG_INVALID = "Invalid response from the server"
MSG_NOT_ARRAY = "Response from the server is not a list or object"
MSG_CORRUPT = "Downloaded file failed verification, it may be corrupt"


@dataclass(frozen=True)
class KindEndpoints:
    """Gateway endpoints for one kind of extension"""
    detail: Optional[str]
    download: str
    search: Optional[str]


KIND_ENDPOINTS: Dict[ExtensionKind, KindEndpoints] = {
    ExtensionKind.PLUGIN: KindEndpoints(detail=REQUEST_PLUGIN_DETAIL, download="plugin/get", search="plugin/search"),
    ExtensionKind.THEME: KindEndpoints(detail=REQUEST_THEME_DETAIL, download="theme/get", search="theme/search"),
    ExtensionKind.MODULE: KindEndpoints(detail=None, download="core/get", search=None),
}


def build_query(data: Union[Dict[str, Any], Sequence[Tuple[str, Any]]]) -> str:
    """
    Encode form data with bracket notation for nested values

        build_query({"names": ["a", "b"]}) == "names%5B0%5D=a&names%5B1%5D=b"
    """
    pairs: List[Tuple[str, str]] = []

    def flatten(key: str, value: Any) -> None:
        if value is None:
            return
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                flatten(f"{key}[{sub_key}]", sub_value)
        elif isinstance(value, (list, tuple)):
            for index, sub_value in enumerate(value):
                flatten(f"{key}[{index}]", sub_value)
        elif isinstance(value, bool):
            pairs.append((key, "1" if value else "0"))
        else:
            pairs.append((key, str(value)))

    items = data.items() if isinstance(data, dict) else data
    for key, value in items:
        flatten(str(key), value)
    return urlencode(pairs)


@dataclass
class TransportResponse:
    """Status code and body of a gateway response"""
    code: int
    body: str


class Transport:
    """HTTP transport for the gateway"""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, max_retries: int = 3):
        """
        Initialize transport

        Args:
            timeout: Request timeout in seconds
            max_retries: Maximum number of retry attempts for GET requests
        """
        self.timeout = timeout
        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def post(
        self,
        url: str,
        data: str,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[Tuple[str, str]] = None,
        to_file: Optional[Path] = None
    ) -> TransportResponse:
        """
        POST url-encoded data

        When to_file is given the body is streamed to that file and only
        returned for non-200 responses.

        Raises:
            RemoteCatalogError: On connection failures
        """
        request_headers = {"Content-Type": "application/x-www-form-urlencoded"}
        request_headers.update(headers or {})

        try:
            response = self.session.post(
                url,
                data=data,
                headers=request_headers,
                auth=auth,
                timeout=self.timeout,
                allow_redirects=False,
                stream=to_file is not None,
            )
        except requests.RequestException as e:
            raise RemoteCatalogError(f"Request to {url} failed: {e}") from e

        if to_file is None:
            return TransportResponse(response.status_code, response.text)

        to_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(to_file, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        except requests.RequestException as e:
            raise RemoteCatalogError(f"Download from {url} failed: {e}") from e
        finally:
            response.close()

        body = ""
        if response.status_code != 200:
            body = to_file.read_text(encoding="utf-8", errors="replace")
        return TransportResponse(response.status_code, body)

    def get(self, url: str) -> TransportResponse:
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException as e:
            raise RemoteCatalogError(f"Request to {url} failed: {e}") from e
        return TransportResponse(response.status_code, response.text)

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class MarketplaceClient:
    """Client for the marketplace update gateway"""

    def __init__(
        self,
        config: Optional[ExtensionOSConfig] = None,
        transport: Optional[Transport] = None,
        cache: Optional[ExtensionCache] = None,
        parameters=None,
        extractor: Optional[ArchiveExtractor] = None
    ):
        """
        Initialize client

        Args:
            config: Configuration (defaults to get_config())
            transport: HTTP transport
            cache: Cache for product details and popular products
            parameters: ParameterStore providing project.id and core.build
            extractor: Archive extractor for downloads
        """
        self.config = config or get_config()
        self.transport = transport or Transport(timeout=self.config.request_timeout)
        self.cache = cache or MemoryCache()
        self.parameters = parameters
        self.extractor = extractor or ArchiveExtractor()
        self.temp_dir = self.config.temp_dir
        self.key: Optional[str] = None
        self.secret: Optional[str] = None
        self._last_nonce = 0

        if self.config.update_key and self.config.update_secret:
            self.set_security(self.config.update_key, self.config.update_secret)

    # ------------------------------------------------------------------
    # Request signing
    # ------------------------------------------------------------------

    def set_security(self, key: str, secret: str) -> None:
        self.key = key
        self.secret = secret

    def create_nonce(self) -> str:
        """Seconds followed by six microsecond digits, strictly increasing"""
        now = time.time()
        seconds = int(now)
        nonce = int(f"{seconds}{int((now - seconds) * 1_000_000):06d}")
        if nonce <= self._last_nonce:
            nonce = self._last_nonce + 1
        self._last_nonce = nonce
        return str(nonce)

    @staticmethod
    def create_signature(data: Union[Dict[str, Any], Sequence[Tuple[str, Any]]], secret: str) -> str:
        """base64(HMAC-SHA512(query string, base64-decoded secret))"""
        digest = hmac.new(
            base64.b64decode(secret),
            build_query(data).encode("utf-8"),
            hashlib.sha512,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def create_server_url(self, uri: str) -> str:
        gateway = self.config.update_server
        if not gateway:
            raise RemoteCatalogError("No update server configured")
        if not gateway.endswith("/"):
            gateway += "/"
        return gateway + uri

    def _parameter(self, key: str) -> Any:
        return self.parameters.get(key) if self.parameters is not None else None

    def _prepare(self, post_data: Optional[Dict[str, Any]]) -> Tuple[str, Dict[str, str], Optional[Tuple[str, str]]]:
        data: Dict[str, Any] = dict(post_data or {})
        data["protocol_version"] = PROTOCOL_VERSION
        data["client"] = CLIENT_NAME
        data["server"] = base64.b64encode(json.dumps({
            "python": platform.python_version(),
            "base_path": str(self.config.base_path),
        }).encode("utf-8")).decode("ascii")

        project_id = self._parameter("project.id")
        if project_id:
            data["project"] = project_id
        if self.config.edge_updates:
            data["edge"] = 1

        headers: Dict[str, str] = {}
        if self.key and self.secret:
            data["nonce"] = self.create_nonce()
            pairs = sorted(data.items())
            headers["Rest-Key"] = self.key
            headers["Rest-Sign"] = self.create_signature(pairs, self.secret)
        else:
            pairs = sorted(data.items())

        auth = None
        if self.config.update_auth:
            user, _, password = self.config.update_auth.partition(":")
            auth = (user, password)

        return build_query(pairs), headers, auth

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def fetch(self, uri: str, post_data: Optional[Dict[str, Any]] = None) -> Union[Dict[str, Any], List[Any]]:
        """
        POST to the gateway and decode the JSON response

        Raises:
            RemoteCatalogError: If the response is missing, unsuccessful,
                not JSON, or not a list/object
        """
        body, headers, auth = self._prepare(post_data)
        result = self.transport.post(self.create_server_url(uri), body, headers=headers, auth=auth)

        code = result.code
        if result.body == "Package not found":
            code = 500

        if code == 404:
            raise RemoteCatalogError(MSG_NOT_FOUND)
        if code != 200:
            raise RemoteCatalogError(result.body if result.body else MSG_EMPTY)

        try:
            data = json.loads(result.body)
        except ValueError as e:
            raise RemoteCatalogError(MSG_INVALID) from e

        if data is False or data == "":
            raise RemoteCatalogError(MSG_INVALID)
        if not isinstance(data, (dict, list)):
            raise RemoteCatalogError(MSG_NOT_ARRAY)
        return data

    def get_file_path(self, file_code: str) -> Path:
        return self.temp_dir / f"{hashlib.md5(file_code.encode('utf-8')).hexdigest()}.arc"

    def fetch_file(
        self,
        uri: str,
        file_code: str,
        expected_hash: str,
        post_data: Optional[Dict[str, Any]] = None
    ) -> Path:
        """
        Download a file and verify its md5 hash

        Raises:
            RemoteCatalogError: If the download fails or the hash differs
        """
        file_path = self.get_file_path(file_code)
        body, headers, auth = self._prepare(post_data)
        result = self.transport.post(
            self.create_server_url(uri), body, headers=headers, auth=auth, to_file=file_path
        )

        if result.code != 200:
            file_path.unlink(missing_ok=True)
            raise RemoteCatalogError(result.body or MSG_EMPTY)

        if hashlib.md5(file_path.read_bytes()).hexdigest() != expected_hash:
            file_path.unlink(missing_ok=True)
            raise RemoteCatalogError(MSG_CORRUPT)

        logger.info(f"Downloaded {uri} to {file_path}")
        return file_path

    def request(self, request: str, identifier: str) -> Union[Dict[str, Any], List[Any]]:
        if request not in VALID_REQUESTS:
            raise ApplicationError("Invalid request option.")
        key = "id" if request == REQUEST_PROJECT_DETAIL else "name"
        return self.fetch(request, {key: identifier})

    def search(self, query: str, product_type: str = "") -> Union[Dict[str, Any], List[Any]]:
        uri = "plugin/search" if product_type == "plugin" else "theme/search"
        return self.fetch(uri, {"query": query})

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def _product_cache(self) -> Dict[str, Dict[str, Any]]:
        cached = self.cache.get(PRODUCT_CACHE_KEY) or {}
        return {"plugin": dict(cached.get("plugin", {})), "theme": dict(cached.get("theme", {}))}

    def _save_product_cache(self, products: Dict[str, Dict[str, Any]]) -> None:
        self.cache.set(PRODUCT_CACHE_KEY, products, PRODUCT_CACHE_TTL)

    def fetch_products(
        self,
        product_type: str,
        url: str,
        cache_key: str,
        post_data: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        data = self.fetch(product_type + url, post_data)
        products = list(data.values()) if isinstance(data, dict) else list(data)
        self.cache.set(cache_key, products, POPULAR_CACHE_TTL)

        product_cache = self._product_cache()
        for product in products:
            code = product.get("code") if isinstance(product, dict) else None
            if code:
                product_cache[product_type][code] = product
        self._save_product_cache(product_cache)
        return products

    def request_product_details(
        self,
        codes: Union[str, List[str]],
        product_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Product details, fetched only for codes not cached yet"""
        if product_type not in ("plugin", "theme"):
            product_type = "plugin"
        codes = [codes] if isinstance(codes, str) else list(codes)

        product_cache = self._product_cache()
        missing = [code for code in codes if code not in product_cache[product_type]]
        if missing:
            checksum = zlib.crc32(",".join(missing).encode("utf-8"))
            data = self.fetch_products(
                product_type,
                "/details",
                f"extensionos.catalog.products-{checksum}",
                {"names": missing},
            )
            product_cache = self._product_cache()
            returned = {p.get("code") for p in data if isinstance(p, dict)}
            for code in missing:
                if code not in returned:
                    product_cache[product_type][code] = UNKNOWN_PRODUCT
            self._save_product_cache(product_cache)

        return [
            product_cache[product_type][code]
            for code in codes
            if product_cache[product_type].get(code, UNKNOWN_PRODUCT) != UNKNOWN_PRODUCT
        ]

    def request_popular_products(self, product_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if product_type not in ("plugin", "theme"):
            product_type = "plugin"
        return self.fetch_products(product_type, "/popular", f"extensionos.catalog.popular-{product_type}")

    def request_changelog(self, build: Optional[str] = None) -> Any:
        """
        Changelog of the release branch of build (e.g. build 1.2.5 reads branch 1.2)

        Raises:
            RemoteCatalogError: On a missing, unsuccessful or invalid response
        """
        if build is None:
            build = self._parameter("core.build")

        uri = "changelog"
        if build:
            branch = ".".join(str(build).split(".")[:-1])
            if branch:
                uri = f"changelog/{branch}"

        result = self.transport.get(self.create_server_url(uri))
        if result.code == 404:
            raise RemoteCatalogError(MSG_EMPTY)
        if result.code != 200:
            raise RemoteCatalogError(result.body if result.body else MSG_EMPTY)

        try:
            return json.loads(result.body)
        except ValueError as e:
            raise RemoteCatalogError(MSG_INVALID) from e

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    def _file_code(self, kind: ExtensionKind, name: str, file_hash: str) -> str:
        return "core" if kind == ExtensionKind.MODULE else name + file_hash

    def download(
        self,
        kind: ExtensionKind,
        name: str,
        file_hash: str,
        installation: bool = False
    ) -> Path:
        """Download the archive of a plugin, a theme, or the core (MODULE)"""
        endpoints = KIND_ENDPOINTS[ExtensionKind(kind)]
        if kind == ExtensionKind.PLUGIN:
            post_data = {"name": name, "installation": 1 if installation else 0}
        elif kind == ExtensionKind.THEME:
            post_data = {"name": name}
        else:
            post_data = {"type": "update"}
        return self.fetch_file(endpoints.download, self._file_code(kind, name, file_hash), file_hash, post_data)

    def extract(self, kind: ExtensionKind, name: str, file_hash: str, destination: Path) -> None:
        """
        Extract a downloaded archive into destination and remove it

        Raises:
            ArchiveError: If extraction fails
        """
        file_path = self.get_file_path(self._file_code(ExtensionKind(kind), name, file_hash))
        extract_archive(file_path, destination, self.extractor)
        logger.info(f"Extracted {name or 'core'} into {destination}")

    def request_details(self, kind: ExtensionKind, name: str) -> Union[Dict[str, Any], List[Any]]:
        endpoints = KIND_ENDPOINTS[ExtensionKind(kind)]
        if endpoints.detail is None:
            raise ApplicationError(f"The marketplace does not provide {ExtensionKind(kind).value}s")
        return self.request(endpoints.detail, name)
