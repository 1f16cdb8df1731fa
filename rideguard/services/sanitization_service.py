# rideguard/services/sanitization_service.py
"""
Request sanitization for body, query and path parameters.

Passes, in order:
1. Parameter-pollution guard (query only): repeated keys collapse to the last value
2. XSS detector: reports suspicious strings, never modifies them
3. Injection guard: drops keys that start with `$` or contain `.`
4. Markup sanitizer: cleans every string leaf and object key

The pipeline is fail-open. A pass that errors is logged and its input
proceeds unchanged. The one exception is nesting beyond the depth
limit, which raises SanitizationDepthError so the caller can reject
the request.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import logging

import nh3

from rideguard.core.exceptions import SanitizationDepthError, SanitizationFault
from rideguard.services.json_visitor import DEFAULT_MAX_DEPTH, JsonVisitor, join_path
from rideguard.services.xss_detector import XSSDetector, XSSFinding

logger = logging.getLogger(__name__)

ALLOWED_TAGS = {"b", "i", "em", "strong", "p", "br"}
STRIPPED_CONTENT_TAGS = {"script", "style", "iframe", "object", "embed"}
DEFAULT_POLLUTION_WHITELIST = ("tags", "fields")

# Scheme and handler text that survives tag stripping as plain text
DANGEROUS_SCHEME = re.compile(r"(?:java|vb|live)script\s*:", re.IGNORECASE)
EVENT_HANDLER = re.compile(
    r"\bon(?:abort|afterprint|animationend|animationstart|beforeprint|beforeunload|blur"
    r"|change|click|contextmenu|copy|cut|dblclick|drag|dragend|dragenter|dragleave"
    r"|dragover|dragstart|drop|error|focus|focusin|focusout|hashchange|input|invalid"
    r"|keydown|keypress|keyup|load|message|mousedown|mouseenter|mouseleave|mousemove"
    r"|mouseout|mouseover|mouseup|pagehide|pageshow|paste|pointerdown|pointerenter"
    r"|pointerleave|pointermove|pointerout|pointerover|pointerup|popstate|reset|resize"
    r"|scroll|search|select|submit|toggle|touchend|touchmove|touchstart|transitionend"
    r"|unload|wheel)\s*=",
    re.IGNORECASE,
)

QueryInput = Union[Mapping[str, Any], Iterable[Tuple[str, str]]]


def is_forbidden_key(key: Any) -> bool:
    """Keys that could inject operators or paths into a document-store filter"""
    return isinstance(key, str) and (key.startswith("$") or "." in key)


def _strip_plaintext_vectors(value: str) -> str:
    while True:
        cleaned = EVENT_HANDLER.sub("", DANGEROUS_SCHEME.sub("", value))
        if cleaned == value:
            return cleaned
        value = cleaned


def _clean_once(value: str) -> str:
    cleaned = nh3.clean(
        value,
        tags=ALLOWED_TAGS,
        clean_content_tags=STRIPPED_CONTENT_TAGS,
        attributes={},
        strip_comments=True,
        link_rel=None,
    )
    # The serializer escapes every `&`; only `<` and `>` need to stay escaped
    return _strip_plaintext_vectors(cleaned.replace("&amp;", "&"))


def sanitize_markup(value: str) -> str:
    """
    Clean one string.

    Keeps b, i, em, strong, p and br without attributes, removes script,
    style, iframe, object and embed along with their content, strips
    every other tag and all comments. Stray `<` and `>` come back as
    `&lt;` and `&gt;`; plain `&` is left alone.

    Each pass decodes one layer of entities, so passes repeat until the
    output is stable.
    """
    while True:
        cleaned = _clean_once(value)
        if cleaned == value:
            return cleaned
        value = cleaned


class InjectionGuard(JsonVisitor):
    """Removes operator and dotted-path keys at every depth"""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        super().__init__(max_depth)
        self._removed: List[str] = []

    def visit_object(self, obj: Mapping, path: str, depth: int) -> Dict[str, Any]:
        result = {}
        for key, value in obj.items():
            key_path = join_path(path, key)
            if is_forbidden_key(key):
                logger.warning(f"Injection attempt blocked: {key_path}")
                self._removed.append(key_path)
                continue
            result[key] = self.visit(value, key_path, depth + 1)
        return result

    def strip(self, value: Any, location: str = "") -> Tuple[Any, List[str]]:
        """Return the cleaned value and the paths of removed keys."""
        self._removed = []
        try:
            cleaned = self.visit(value, location)
        finally:
            removed, self._removed = self._removed, []
        return cleaned, removed


class MarkupSanitizer(JsonVisitor):
    """Applies `sanitize_markup` to every string leaf and object key"""

    def visit_object(self, obj: Mapping, path: str, depth: int) -> Dict[str, Any]:
        result = {}
        for key, value in obj.items():
            clean_key = sanitize_markup(key) if isinstance(key, str) else key
            if is_forbidden_key(clean_key):
                # The cleaned key would be rejected by the injection guard
                continue
            result[clean_key] = self.visit(value, join_path(path, clean_key), depth + 1)
        return result

    def visit_string(self, value: str, path: str) -> str:
        return sanitize_markup(value)

    def clean(self, value: Any, location: str = "") -> Any:
        return self.visit(value, location)


def collapse_query_params(
    params: QueryInput,
    whitelist: Sequence[str] = DEFAULT_POLLUTION_WHITELIST
) -> Dict[str, Union[str, List[str]]]:
    """
    Collapse repeated query keys to their last value.

    Whitelisted keys keep every value as a list when repeated.
    """
    if isinstance(params, Mapping):
        pairs = []
        for key, value in params.items():
            if isinstance(value, (list, tuple)):
                pairs.extend((key, item) for item in value)
            else:
                pairs.append((key, value))
    else:
        pairs = list(params)

    grouped: Dict[str, List[Any]] = {}
    for key, value in pairs:
        grouped.setdefault(key, []).append(value)

    collapsed: Dict[str, Union[str, List[str]]] = {}
    for key, values in grouped.items():
        if len(values) > 1 and key in whitelist:
            collapsed[key] = values
        else:
            if len(values) > 1:
                logger.debug(f"Collapsed {len(values)} values of query parameter '{key}'")
            collapsed[key] = values[-1]
    return collapsed


@dataclass
class RequestData:
    """Structured request inputs; `query` may be raw (key, value) pairs"""
    body: Any = None
    query: QueryInput = field(default_factory=dict)
    path_params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SanitizationResult:
    body: Any = None
    query: Dict[str, Any] = field(default_factory=dict)
    path_params: Dict[str, Any] = field(default_factory=dict)
    removed_keys: List[str] = field(default_factory=list)
    findings: List[XSSFinding] = field(default_factory=list)
    failed_passes: List[str] = field(default_factory=list)

    @property
    def blocked_injection(self) -> bool:
        return bool(self.removed_keys)

    def as_request_data(self) -> RequestData:
        return RequestData(body=self.body, query=self.query, path_params=self.path_params)


class SanitizationPipeline:
    """
    Runs detector, pollution guard, injection guard and markup sanitizer.

    Usage:
        pipeline = SanitizationPipeline(max_depth=32)
        result = pipeline.sanitize(RequestData(body=payload))
    """

    def __init__(
        self,
        max_depth: int = DEFAULT_MAX_DEPTH,
        pollution_whitelist: Sequence[str] = DEFAULT_POLLUTION_WHITELIST,
        detector: Optional[XSSDetector] = None,
    ):
        self.max_depth = max_depth
        self.pollution_whitelist = tuple(pollution_whitelist)
        self.guard = InjectionGuard(max_depth)
        self.markup = MarkupSanitizer(max_depth)
        self.detector = detector or XSSDetector(max_depth)

    def _run_pass(self, name: str, location: str, func, value: Any, result: SanitizationResult) -> Any:
        try:
            return func(value)
        except SanitizationDepthError:
            raise
        except Exception as e:
            fault = SanitizationFault(f"{name} failed: {e}", location=location)
            logger.error(f"Sanitization pass failed open: {fault}")
            result.failed_passes.append(f"{location}:{name}")
            return value

    def _clean(self, location: str, value: Any, result: SanitizationResult) -> Any:
        def guard(v):
            cleaned, removed = self.guard.strip(v, location)
            result.removed_keys.extend(removed)
            return cleaned

        value = self._run_pass("injection_guard", location, guard, value, result)
        return self._run_pass(
            "markup_sanitizer", location, lambda v: self.markup.clean(v, location), value, result
        )

    def sanitize(self, data: RequestData) -> SanitizationResult:
        """
        Sanitize all request locations.

        Raises:
            SanitizationDepthError: a location nests deeper than `max_depth`
        """
        result = SanitizationResult()

        query = self._run_pass(
            "pollution_guard", "query",
            lambda q: collapse_query_params(q, self.pollution_whitelist),
            data.query, result
        )
        if not isinstance(query, Mapping):
            query = dict(query)

        for location, value in (("body", data.body), ("query", query), ("params", data.path_params)):
            result.findings.extend(self.detector.scan(value, location))

        if result.findings:
            logger.warning(
                f"Potential XSS attack detected: "
                f"{[(f.location, f.pattern) for f in result.findings]}"
            )

        result.body = self._clean("body", data.body, result)
        result.query = self._clean("query", query, result)
        result.path_params = self._clean("params", data.path_params or {}, result)
        return result


# Global instance - configured in the application lifespan
sanitization_pipeline: Optional[SanitizationPipeline] = None


def get_sanitization_pipeline() -> SanitizationPipeline:
    """Get the global pipeline, creating a default one on first use"""
    global sanitization_pipeline
    if sanitization_pipeline is None:
        sanitization_pipeline = SanitizationPipeline()
    return sanitization_pipeline


def init_sanitization_pipeline(
    max_depth: int = DEFAULT_MAX_DEPTH,
    pollution_whitelist: Sequence[str] = DEFAULT_POLLUTION_WHITELIST
) -> SanitizationPipeline:
    global sanitization_pipeline
    sanitization_pipeline = SanitizationPipeline(max_depth, pollution_whitelist)
    logger.info(f"🧼 Initialized SanitizationPipeline (max depth {max_depth})")
    return sanitization_pipeline
