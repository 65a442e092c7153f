"""CORS proxy URL rewriting for manifests, segments and keys."""

from urllib.parse import parse_qs, quote, urlsplit

# Characters encodeURIComponent leaves alone
_URI_COMPONENT_SAFE = "-_.!~*'()"

DEFAULT_PROXY_BASE = "https://hls.ciphertv.dev/proxy?url="
DEFAULT_LOCAL_PREFIX = "/api/"


class ProxyRewriter:
    """Maps arbitrary stream URLs onto the trusted proxy endpoint.

    ``proxy_base`` must end with the query parameter that carries the
    target, e.g. ``https://host/proxy?url=``.
    """

    def __init__(self, proxy_base: str = DEFAULT_PROXY_BASE, local_prefix: str = DEFAULT_LOCAL_PREFIX):
        if "?" not in proxy_base or not proxy_base.endswith("="):
            raise ValueError(f"Proxy base must end with a query parameter: {proxy_base!r}")
        self.proxy_base = proxy_base
        self.local_prefix = local_prefix

        parts = urlsplit(proxy_base)
        self._marker = f"{parts.netloc}{parts.path}"
        self._param = proxy_base.rsplit("?", 1)[1].rsplit("&", 1)[-1][:-1]

    def is_proxied(self, url: str) -> bool:
        return bool(url) and self._marker in url

    def is_local(self, url: str) -> bool:
        return bool(url) and bool(self.local_prefix) and url.startswith(self.local_prefix)

    def rewrite(self, url: str) -> str:
        """Route ``url`` through the proxy unless it already goes there or is local."""
        if not url or self.is_proxied(url) or self.is_local(url):
            return url
        return self.proxy_base + quote(url, safe=_URI_COMPONENT_SAFE)

    def unwrap(self, url: str) -> str:
        """Return the upstream target of a proxied URL (or ``url`` itself)."""
        if not self.is_proxied(url):
            return url
        values = parse_qs(urlsplit(url).query).get(self._param)
        return values[0] if values else url

    def __call__(self, url: str) -> str:
        return self.rewrite(url)
