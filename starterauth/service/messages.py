from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from starterauth.logging import get_logger

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

Catalog = Dict[str, Dict[str, str]]


class MessageResolver:
    """Resolve ``CATEGORY.REASON`` error codes to localized messages.

    Catalogs are JSON files named ``<language>.json`` in ``locales_dir``, each a
    ``{category: {reason: message}}`` mapping. Messages may contain ``{name}``
    placeholders filled from the params passed to :meth:`resolve`.

    The resolver is constructed once by the runtime and handed to whatever
    renders error bodies; :meth:`reload` re-reads the catalogs in place.
    """

    def __init__(
        self,
        locales_dir: str | Path,
        *,
        supported_languages: Iterable[str] = ("en", "fr"),
        default_language: str = "en",
    ) -> None:
        self.locales_dir = Path(locales_dir)
        self.supported_languages = tuple(supported_languages)
        self.default_language = default_language
        if default_language not in self.supported_languages:
            raise ValueError(
                f"default language {default_language!r} is not in {self.supported_languages}"
            )
        self._lock = threading.Lock()
        self._catalogs: Dict[str, Catalog] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read every supported catalog from disk."""
        catalogs: Dict[str, Catalog] = {}
        for language in self.supported_languages:
            path = self.locales_dir / f"{language}.json"
            try:
                catalogs[language] = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.error(
                    "message_catalog_load_failed",
                    language=language,
                    path=str(path),
                    error=str(exc),
                )
        with self._lock:
            self._catalogs = catalogs
        logger.info("message_catalogs_loaded", languages=sorted(catalogs))

    def catalog(self, language: str) -> Catalog:
        with self._lock:
            return self._catalogs.get(language, {})

    def parse_accept_language(self, accept_language: Optional[str]) -> str:
        """Pick the best supported language from an ``Accept-Language`` header.

        Entries are ordered by their ``q`` weight (default 1.0) and reduced to
        the primary subtag, so ``fr-CA`` selects ``fr``. Unsupported or missing
        values fall back to the default language.
        """
        if not accept_language:
            return self.default_language

        candidates: list[tuple[float, int, str]] = []
        for position, part in enumerate(accept_language.split(",")):
            pieces = [piece.strip() for piece in part.split(";")]
            tag = pieces[0]
            if not tag:
                continue
            quality = 1.0
            for param in pieces[1:]:
                if param.startswith("q="):
                    try:
                        quality = float(param[2:])
                    except ValueError:
                        quality = 0.0
            candidates.append((quality, position, tag.split("-")[0].lower()))

        # stable on header order for equal weights
        candidates.sort(key=lambda item: (-item[0], item[1]))
        for quality, _, language in candidates:
            if quality > 0 and language in self.supported_languages:
                return language
        return self.default_language

    def resolve(
        self,
        code: str,
        accept_language: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Return the message for ``code``, or ``code`` itself when unknown."""
        language = self.parse_accept_language(accept_language)
        return self.resolve_for_language(code, language, params)

    def resolve_for_language(
        self,
        code: str,
        language: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> str:
        category, _, reason = code.partition(".")
        message = self.catalog(language).get(category, {}).get(reason)
        if message is None and language != self.default_language:
            message = self.catalog(self.default_language).get(category, {}).get(reason)
        if message is None:
            logger.warning("message_not_found", code=code, language=language)
            return code
        return _interpolate(message, params)


def _interpolate(message: str, params: Optional[Mapping[str, Any]]) -> str:
    if not params:
        return message

    def _replace(match: re.Match) -> str:
        value = params.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, message)
