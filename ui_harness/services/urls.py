from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Pattern, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def _base_url(context: Any) -> str:
    return str(getattr(context, "base_url", "") or "")


class UrlCleaner:
    """Turns a raw URL into the key used to track a page's fuzzing budget."""

    def __call__(self, url: str, context: Any) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError


class UrlFilter:
    """Decides whether a URL may be fuzzed at all."""

    def __call__(self, url: str, context: Any) -> bool:  # pragma: no cover - interface stub
        raise NotImplementedError


class RemoveFragment(UrlCleaner):
    def __call__(self, url: str, context: Any) -> str:
        parts = urlsplit(url)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))

    def __repr__(self) -> str:
        return "RemoveFragment()"


class RemoveQueryParameters(UrlCleaner):
    """Strip the named query parameters, or the whole query string when none are named."""

    def __init__(self, *names: str) -> None:
        self._names = {name.lower() for name in names}

    def __call__(self, url: str, context: Any) -> str:
        parts = urlsplit(url)
        if not parts.query:
            return url
        if self._names:
            kept = [
                (key, value)
                for key, value in parse_qsl(parts.query, keep_blank_values=True)
                if key.lower() not in self._names
            ]
            query = urlencode(kept)
        else:
            query = ""
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))

    def __repr__(self) -> str:
        return f"RemoveQueryParameters({', '.join(sorted(self._names))})"


class RemoveBaseUrl(UrlCleaner):
    def __call__(self, url: str, context: Any) -> str:
        base = _base_url(context).rstrip("/")
        if base and url.startswith(base):
            return url[len(base):] or "/"
        return url

    def __repr__(self) -> str:
        return "RemoveBaseUrl()"


class StartsWithBaseUrl(UrlFilter):
    def __call__(self, url: str, context: Any) -> bool:
        base = _base_url(context)
        return not base or url.startswith(base)

    def __repr__(self) -> str:
        return "StartsWithBaseUrl()"


class MatchesRegex(UrlFilter):
    def __init__(self, pattern: Union[str, Pattern[str]], *, exclude: bool = False) -> None:
        self._pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self._exclude = exclude

    def __call__(self, url: str, context: Any) -> bool:
        matched = self._pattern.search(url) is not None
        return not matched if self._exclude else matched

    def __repr__(self) -> str:
        return f"MatchesRegex({self._pattern.pattern!r}, exclude={self._exclude})"


def clean_url(url: str, cleaners: Iterable[UrlCleaner], context: Optional[Any] = None) -> str:
    for cleaner in cleaners:
        url = cleaner(url, context)
    return url


def should_test_url(url: str, filters: Iterable[UrlFilter], context: Optional[Any] = None) -> bool:
    return all(url_filter(url, context) for url_filter in filters)
