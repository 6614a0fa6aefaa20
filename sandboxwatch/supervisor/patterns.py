"""Error rule table and benign-line denylist for the output classifier.

Rules are evaluated top to bottom and the first rule whose matcher hits
(and whose extractor accepts the match) wins, so more specific shapes sit
above generic ones. Adding support for a new framework means adding a row
here; the dispatch code in ``classifier.py`` never changes.

Every unanchored matcher starts with a literal or a word boundary so that
a search over a long chunk stays linear.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sandboxwatch.supervisor.models import ErrorCategory, ErrorSeverity, LogLevel

Category = ErrorCategory
Severity = ErrorSeverity


@dataclass(frozen=True)
class RuleMatch:
    """What an extractor pulled out of a match. ``None`` fields fall back to defaults."""

    message: Optional[str] = None
    source_file: Optional[str] = None
    line_number: Optional[int] = None
    column_number: Optional[int] = None
    category: Optional[ErrorCategory] = None
    severity: Optional[ErrorSeverity] = None
    stack_trace: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)


Extractor = Callable[[re.Match[str], str], Optional[RuleMatch]]


def _to_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def line_at(text: str, pos: int) -> str:
    """Return the full line of ``text`` containing offset ``pos``."""
    start = text.rfind("\n", 0, pos) + 1
    end = text.find("\n", pos)
    return text[start:] if end == -1 else text[start:end]


def groups(
    message: Optional[int] = None,
    file: Optional[int] = None,
    line: Optional[int] = None,
    column: Optional[int] = None,
    *,
    whole_line: bool = False,
) -> Extractor:
    """Build an extractor that reads fields from numbered capture groups."""

    def extract(match: re.Match[str], text: str) -> RuleMatch:
        if message is not None and match.group(message):
            msg = match.group(message)
        elif whole_line:
            msg = line_at(text, match.start())
        else:
            msg = match.group(0)
        return RuleMatch(
            message=msg,
            source_file=match.group(file) if file is not None else None,
            line_number=_to_int(match.group(line)) if line is not None else None,
            column_number=_to_int(match.group(column)) if column is not None else None,
        )

    return extract


# ── Custom extractors ────────────────────────────────────────────────

_PY_EXCEPTION_LINE = re.compile(
    r"^([A-Za-z_][\w.]*(?:Error|Exception|Warning|Exit|Interrupt|Iteration))(?::\s*(.*))?$"
)

_PYTHON_CATEGORIES: dict[str, ErrorCategory] = {
    "SyntaxError": Category.SYNTAX,
    "IndentationError": Category.SYNTAX,
    "TabError": Category.SYNTAX,
    "ModuleNotFoundError": Category.DEPENDENCY,
    "ImportError": Category.DEPENDENCY,
    "PermissionError": Category.PERMISSION,
    "MemoryError": Category.RESOURCE,
    "RecursionError": Category.RESOURCE,
    "ConnectionError": Category.NETWORK,
    "ConnectionRefusedError": Category.NETWORK,
    "ConnectionResetError": Category.NETWORK,
    "ConnectionAbortedError": Category.NETWORK,
    "TimeoutError": Category.NETWORK,
    "gaierror": Category.NETWORK,
    "KeyError": Category.RUNTIME,
}


def _python_traceback(match: re.Match[str], text: str) -> RuleMatch:
    # Chained tracebacks repeat the header; the last exception line is the one raised.
    last: Optional[re.Match[str]] = None
    for raw in text[match.end():].split("\n"):
        if not raw.strip() or raw[:1].isspace():
            continue
        found = _PY_EXCEPTION_LINE.match(raw.strip())
        if found:
            last = found
    if last is None:
        return RuleMatch(message="Python traceback (exception line not captured)")

    name, detail = last.group(1), last.group(2) or ""
    short = name.rsplit(".", 1)[-1]
    severity = Severity.WARNING if short.endswith("Warning") or short == "KeyboardInterrupt" else None
    category = _PYTHON_CATEGORIES.get(short)
    if category is None and "Config" in short:
        category = Category.CONFIGURATION
    return RuleMatch(
        message=f"{name}: {detail}" if detail else name,
        category=category,
        severity=severity,
        context={"exception_type": name},
    )


_FROM_PATH = re.compile(r"""\bfrom\s+['"`]([^'"`]+)['"`]""")


def _module_not_found(match: re.Match[str], text: str) -> RuleMatch:
    line = line_at(text, match.start())
    origin = _FROM_PATH.search(line)
    return RuleMatch(
        message=line,
        source_file=origin.group(1) if origin else None,
        context={"module": match.group(1)},
    )


def _js_error(match: re.Match[str], text: str) -> RuleMatch:
    name, detail = match.group(1), match.group(2)
    category = Category.SYNTAX if name == "SyntaxError" else None
    return RuleMatch(message=f"{name}: {detail}", category=category, context={"error_type": name})


def _sdk_http_error(match: re.Match[str], text: str) -> RuleMatch:
    name, status, rest = match.group(1), match.group(2), (match.group(3) or "").strip()
    category = Category.CONFIGURATION if status in ("401", "403") else Category.NETWORK
    return RuleMatch(
        message=f"{name}: {status} {rest}".strip(),
        category=category,
        context={"status_code": int(status), "error_type": name},
    )


def _line_message(match: re.Match[str], text: str) -> RuleMatch:
    return RuleMatch(message=line_at(text, match.start()))


def _eslint_problem(match: re.Match[str], text: str) -> RuleMatch:
    severity = Severity.ERROR if match.group(4) == "error" else Severity.WARNING
    return RuleMatch(
        message=match.group(5),
        source_file=match.group(1),
        line_number=_to_int(match.group(2)),
        column_number=_to_int(match.group(3)),
        severity=severity,
    )


def _nextjs_compile(match: re.Match[str], text: str) -> RuleMatch:
    detail = match.group(1).strip()
    return RuleMatch(message=f"Failed to compile: {detail}")


_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_JSON_MESSAGE = re.compile(r"""message['"]?\s*[:=]\s*['"]([^'"]+)['"]""")
_EMBEDDED_ERROR = re.compile(r"\b((?:Reference|Type|Syntax|Range)?Error):\s*([^,\n]+)")


def _load_client_payload(raw: str) -> Optional[dict[str, Any]]:
    candidates = [raw]
    trimmed = raw[: raw.rfind("}") + 1] if "}" in raw else raw
    candidates.append(_TRAILING_COMMA.sub(r"\1", trimmed).replace("\n", "\\n").replace("\t", "\\t"))
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except (ValueError, RecursionError):
            continue
        if isinstance(data, dict):
            return data
    return None


def _client_error_json(match: re.Match[str], text: str) -> RuleMatch:
    raw = match.group(1)
    data = _load_client_payload(raw)
    if data is None:
        found = _JSON_MESSAGE.search(raw) or _EMBEDDED_ERROR.search(raw)
        if found is None:
            detail = "Client error (malformed data)"
        else:
            detail = found.group(found.lastindex or 1).strip()
        return RuleMatch(
            message=f"Client Error: {detail}",
            stack_trace=raw,
            context={"source": "client", "parse_error": True},
        )

    detail = str(data.get("message") or "Client error").strip().rstrip("'\"")
    source = data.get("source") or data.get("filename") or data.get("url")
    return RuleMatch(
        message=f"Client Error: {detail}",
        source_file=str(source) if source else None,
        line_number=_to_int(data.get("lineno")) if data.get("source") else None,
        column_number=_to_int(data.get("colno")) if data.get("source") else None,
        stack_trace=str(data["stack"]) if data.get("stack") else None,
        context={"source": "client", "client_data": data},
    )


# ── Rule table ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ErrorRule:
    """One (matcher, extractor) row of the classifier table."""

    id: str
    matcher: re.Pattern[str]
    category: ErrorCategory
    severity: ErrorSeverity
    extractor: Extractor = field(default_factory=lambda: groups(whole_line=True))


_M = re.MULTILINE
_I = re.IGNORECASE

ERROR_RULES: tuple[ErrorRule, ...] = (
    # Process-killing conditions
    ErrorRule(
        "out_of_memory",
        re.compile(
            r"(?:Reached heap limit|JavaScript heap out of memory|heap out of memory"
            r"|Out of memory|Maximum call stack size exceeded|\bENOMEM\b)",
            _I,
        ),
        Category.RESOURCE, Severity.FATAL, _line_message,
    ),
    ErrorRule("node_fatal", re.compile(r"FATAL ERROR: (.+)"), Category.RUNTIME, Severity.FATAL, groups(message=1)),
    ErrorRule(
        "uncaught_exception", re.compile(r"Uncaught Exception: (.+)"),
        Category.RUNTIME, Severity.FATAL, groups(message=1),
    ),
    ErrorRule(
        "python_traceback", re.compile(r"^\s*Traceback \(most recent call last\):", _M),
        Category.RUNTIME, Severity.ERROR, _python_traceback,
    ),

    # Bundler / transform failures
    ErrorRule(
        "import_resolve_error",
        re.compile(r"""Failed to resolve import ["'`](.+?)["'`] from ["'`](.+?)["'`]"""),
        Category.DEPENDENCY, Severity.ERROR, groups(file=2),
    ),
    ErrorRule(
        "rollup_resolve_error",
        re.compile(r"""(?:Rollup failed to resolve import|Could not resolve) ["'`](.+?)["'`] from ["'`]?([^"'`\s]+?)["'`]?(?:\.\s|\.?$|\s)""", _M),
        Category.DEPENDENCY, Severity.ERROR, groups(whole_line=True, file=2),
    ),
    ErrorRule(
        "module_not_found",
        re.compile(
            r"""(?:Module not found|Cannot resolve module|Cannot find module|Cannot find package"""
            r"""|ModuleNotFoundError|No module named)[:\s]+(?:Error: )?(?:Can't resolve )?['"`]?([^'"`\s]+)['"`]?"""
        ),
        Category.DEPENDENCY, Severity.ERROR, _module_not_found,
    ),
    ErrorRule(
        "esbuild_error_location",
        re.compile(r"^\s*(\S+?):(\d+):(\d+): ERROR: (.+)$", _M),
        Category.BUILD, Severity.ERROR, groups(message=4, file=1, line=2, column=3),
    ),
    ErrorRule(
        "vite_transform_failed", re.compile(r"Transform failed with \d+ errors?:?[ \t]*\n?(.*)"),
        Category.BUILD, Severity.ERROR, groups(message=1),
    ),
    ErrorRule(
        "vite_css_error", re.compile(r"\[vite:css\]\s*(?:\[postcss\]\s*)?(.+)"),
        Category.BUILD, Severity.ERROR, groups(message=1),
    ),
    ErrorRule(
        "vite_error",
        re.compile(r"\[vite(?::\w+)?\] (?:Internal server error|Error|Pre-transform error|Build failed)[:\s]+(.+)"),
        Category.BUILD, Severity.ERROR, groups(message=1),
    ),
    ErrorRule(
        "nextjs_build_error", re.compile(r"Failed to compile\.?[ \t]*\n+\s*(.+)"),
        Category.BUILD, Severity.ERROR, _nextjs_compile,
    ),
    ErrorRule(
        "typescript_error_location",
        re.compile(r"^\s*(\S+?\.(?:tsx?|mts|cts))[(:](\d+)[,:](\d+)\)?:?\s*-?\s*error (TS\d+):\s*(.+)$", _M),
        Category.BUILD, Severity.ERROR, groups(message=5, file=1, line=2, column=3),
    ),
    ErrorRule(
        "typescript_error", re.compile(r"\berror (TS\d+):\s*(.+)", _I),
        Category.BUILD, Severity.ERROR, groups(message=2),
    ),
    ErrorRule(
        "syntax_error", re.compile(r"\b(SyntaxError): (.+)"),
        Category.SYNTAX, Severity.ERROR, _js_error,
    ),

    # Environment
    ErrorRule(
        "port_in_use",
        re.compile(r"\bEADDRINUSE\b|\baddress already in use\b|\bport \d+ is already in use\b", _I),
        Category.CONFIGURATION, Severity.ERROR, _line_message,
    ),
    ErrorRule(
        "permission_denied",
        re.compile(r"\bEACCES\b|\bEPERM\b|\bPermission denied\b|\bPermissionError\b", _I),
        Category.PERMISSION, Severity.ERROR, _line_message,
    ),
    ErrorRule(
        "sdk_http_error",
        re.compile(r"^\s*(?:Uncaught\s+)?(\w*Error): (?:Request failed with status code )?([45]\d\d)\b[ \t]*(.*)$", _M),
        Category.NETWORK, Severity.ERROR, _sdk_http_error,
    ),
    ErrorRule(
        "network_error",
        re.compile(
            r"\b(?:ECONNREFUSED|ECONNRESET|ENOTFOUND|ETIMEDOUT|EAI_AGAIN|EHOSTUNREACH"
            r"|fetch failed|socket hang up|getaddrinfo)\b",
            _I,
        ),
        Category.NETWORK, Severity.ERROR, _line_message,
    ),

    # Framework runtime errors
    ErrorRule(
        "react_hydration_error",
        re.compile(r"\b(?:Hydration failed|Text content does not match|hydration mismatch)\b", _I),
        Category.RUNTIME, Severity.ERROR, _line_message,
    ),
    ErrorRule(
        "react_hook_error",
        re.compile(r"\b(?:Invalid hook call|Rendered (?:more|fewer) hooks than)\b"),
        Category.RUNTIME, Severity.ERROR, _line_message,
    ),
    ErrorRule(
        "unhandled_rejection",
        re.compile(r"\b(?:UnhandledPromiseRejection(?:Warning)?|Unhandled (?:promise )?rejection)[:\s]+(.+)", _I),
        Category.RUNTIME, Severity.ERROR, groups(message=1),
    ),
    ErrorRule(
        "client_error_json", re.compile(r"\[CLIENT ERROR\]\s*(\{.*\})", re.DOTALL),
        Category.RUNTIME, Severity.ERROR, _client_error_json,
    ),
    ErrorRule(
        "js_error",
        re.compile(r"^\s*(?:Uncaught\s+)?((?:[A-Z]\w*)?Error): (.+)$", _M),
        Category.RUNTIME, Severity.ERROR, _js_error,
    ),
    ErrorRule(
        "eslint_problem",
        re.compile(r"^\s*(\S+?):(\d+):(\d+):\s+(error|warning)\s+(.+)$", _M),
        Category.BUILD, Severity.ERROR, _eslint_problem,
    ),

    # Generic shapes
    ErrorRule(
        "console_error",
        re.compile(r"^\s*(?:\[[^\]\n]*\]\s*)?(?:ERROR|error)(?:\s*\[[^\]\n]*\])?\s*:\s*(.+)$", _M),
        Category.RUNTIME, Severity.ERROR, groups(message=1),
    ),
    ErrorRule(
        "generic_exception", re.compile(r"\b(\w*Exception):\s*(.+)"),
        Category.RUNTIME, Severity.ERROR, groups(whole_line=True),
    ),
)


# ── Benign output (never an error) ───────────────────────────────────

BENIGN_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(?:ERROR:\s*)?\$\s+\S"),                                     # shell command echo
    re.compile(r"^>\s+[\w@./-]+@\S*\s+\S+"),                                   # npm script header
    re.compile(r"\bready in\s+\d+(?:\.\d+)?\s*(?:ms|s)\b", _I),
    re.compile(r"^(?:[➜>→-]\s*)?(?:Local|Network|External|On Your Network)\s*:\s+https?://\S+$", _I),
    re.compile(r"^(?:[➜>→-]\s*)?(?:Network|Local)\s*:\s+use --host to expose$", _I),
    re.compile(r"^(?:[➜>→-]\s*)?https?://\S+$"),                              # bare URL
    re.compile(r"\bPort \d+ is in use, (?:trying another one|using (?:available )?port \d+ instead)", _I),
    re.compile(r"\bDefault inspector port \d+ not available, using(?: port)? \d+ instead", _I),
    re.compile(r"^(?:[➜>→-]\s*)?press h(?: \+ enter)? to show help", _I),
    re.compile(r"^\[vite\]\s*(?:hmr update|hmr invalidate|page reload|connecting|connected|server restarted|hot updated)", _I),
    re.compile(r"^VITE v\d+(?:\.\d+)*", _I),
    re.compile(r"\bcompiled successfully\b", _I),
    re.compile(r"\b(?:found|with) 0 errors?\b", _I),
    re.compile(r"\bno issues found\b", _I),
    re.compile(r"^Process (?:started|stopping|stopped|exited|restarting)\b", _I),
    re.compile(r"The latest compatibility date supported by the installed Cloudflare Workers Runtime", _I),
)

# Prefixes a runner may put in front of an echoed command line.
ECHO_PREFIX = re.compile(r"^(?:ERROR:\s*)?(?:[$>]\s*)?")

# Clock or ISO stamp that dev servers print before their own tags ("10:22:33 AM [vite] ...").
LINE_TIMESTAMP = re.compile(
    r"^\[?(?:\d{4}-\d{2}-\d{2}[T ])?\d{1,2}:\d{2}:\d{2}(?:[.,]\d+)?(?:Z|[+-]\d{2}:?\d{2})?"
    r"(?:\s*[AP]M)?\]?\s+",
    _I,
)


# ── Fallback markers ─────────────────────────────────────────────────

FATAL_MARKER = re.compile(r"\b(?:fatal|panic|panicked)\b", _I)
ERROR_MARKER = re.compile(r"\b\w*(?:error|exception)\b", _I)
WEAK_MARKER = re.compile(r"\bfailed\b", _I)
STACK_MARKER = re.compile(r"^\s+at\s+\S", _M)

# stdout only reaches the fallback with one of these; stderr needs any marker.
STRONG_ERROR_INDICATORS = re.compile(
    r"(?:error|fatal|exception|crash|abort):"
    r"|uncaught exception|unhandled promise|syntax error|reference error|type error"
    r"|module not found|failed to compile|build failed|compilation failed|transform failed"
    r"|\beconnrefused\b|\beaddrinuse\b",
    _I,
)

INLINE_LOCATION = re.compile(r"([\w@./\\-]+\.\w+):(\d+)(?::(\d+))?")

CATEGORY_KEYWORDS: tuple[tuple[ErrorCategory, re.Pattern[str]], ...] = (
    (Category.DEPENDENCY, re.compile(r"\b(?:module|import|dependenc(?:y|ies)|package)\b", _I)),
    (Category.SYNTAX, re.compile(r"\b(?:syntax|parse|unexpected token)\b", _I)),
    (Category.BUILD, re.compile(r"\b(?:compil\w*|build|transform\w*|bundl\w*)\b", _I)),
    (Category.RESOURCE, re.compile(r"\b(?:memory|heap|ENOSPC|EMFILE|too many open files|disk full)\b", _I)),
    (Category.NETWORK, re.compile(r"\b(?:network|fetch|connection|socket|timed? ?out|dns)\b", _I)),
    (Category.PERMISSION, re.compile(r"\b(?:permission|denied|forbidden|EACCES|EPERM)\b", _I)),
    (Category.CONFIGURATION, re.compile(r"\b(?:config\w*|env\w*|port|variable)\b", _I)),
)


# ── Log level inference ──────────────────────────────────────────────

LOG_LEVEL_INDICATORS: tuple[tuple[LogLevel, re.Pattern[str]], ...] = (
    (LogLevel.FATAL, re.compile(r"\b(?:fatal|panic|panicked)\b", _I)),
    (
        LogLevel.ERROR,
        re.compile(
            r"\b\w*(?:error|exception)\b|\b(?:uncaught|unhandled|crash(?:ed)?|traceback"
            r"|econnrefused|eaddrinuse)\b|failed to compile|build failed|compilation failed|transform failed",
            _I,
        ),
    ),
    (LogLevel.WARN, re.compile(r"\b(?:warn(?:ing)?|deprecat\w*)\b", _I)),
    (LogLevel.DEBUG, re.compile(r"\b(?:debug|trace|verbose)\b", _I)),
)
