"""Turn chunks of child-process output into structured errors.

The classifier is a pure function of its input: it strips terminal noise,
drops benign lines, walks the ordered rule table in ``patterns.py`` and,
when no rule matches, applies a keyword heuristic. It never raises; on any
internal failure it reports "no error" so the stream loop keeps running.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import NamedTuple, Optional

from sandboxwatch.logging_config import get_logger
from sandboxwatch.supervisor.models import (
    ErrorCategory,
    ErrorSeverity,
    LogLevel,
    LogStream,
    ParsedError,
)
from sandboxwatch.supervisor.patterns import (
    BENIGN_PATTERNS,
    CATEGORY_KEYWORDS,
    ECHO_PREFIX,
    ERROR_MARKER,
    ERROR_RULES,
    FATAL_MARKER,
    INLINE_LOCATION,
    LINE_TIMESTAMP,
    LOG_LEVEL_INDICATORS,
    STACK_MARKER,
    STRONG_ERROR_INDICATORS,
    WEAK_MARKER,
    ErrorRule,
    RuleMatch,
    line_at,
)

logger = get_logger(__name__)

MAX_CLASSIFY_CHARS = 20_000
MAX_MESSAGE_LENGTH = 500
MAX_RAW_OUTPUT = 5_000
MAX_FRAME_LINE = 1_000
MAX_LEVEL_LINE = 2_000

_ANSI = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")
_BRACKET_PREFIX = re.compile(r"^\[[^\]]{0,64}\]\s*")
_TIMESTAMP_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}[T ][\d:.,]+(?:Z|[+-]\d{2}:?\d{2})?\s*")
_LEVEL_PREFIX = re.compile(r"^(?:ERROR|WARN(?:ING)?|INFO|DEBUG)\s*:\s*", re.IGNORECASE)

_JS_FRAME = re.compile(r"^\s*at\s+(.+?)\s*$")
_PY_FRAME = re.compile(r'^\s*File "([^"]+)", line (\d+)')

_PROJECT_ROOTS = ("src", "pages", "components", "lib", "utils", "app")
_NON_PROJECT_MARKERS = (
    "node_modules/",
    "site-packages/",
    "dist-packages/",
    "/.venv/",
    "/vendor/",
    "/lib/python",
)
_NON_PROJECT_PREFIXES = ("node:", "internal/", "bun:", "<", "native", "[")


@dataclass(frozen=True)
class ErrorContext:
    """Where a chunk came from.

    ``command`` lets the classifier ignore echoes of it. On stdout the keyword
    fallback only fires for strong indicators such as ``error:``.
    """

    stream: LogStream = LogStream.STDERR
    source: Optional[str] = None
    command: Optional[str] = None


class StackFrame(NamedTuple):
    path: str
    line: Optional[int]
    column: Optional[int]
    python: bool


# ── Text helpers ─────────────────────────────────────────────────────


def normalize_text(raw: str | bytes) -> str:
    """Decode, cap, and strip ANSI escapes and control characters."""
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw[: MAX_CLASSIFY_CHARS * 4]).decode("utf-8", errors="replace")
    elif not isinstance(raw, str):
        raw = str(raw)
    text = raw[:MAX_CLASSIFY_CHARS].replace("\r\n", "\n").replace("\r", "\n")
    return _CONTROL.sub("", _ANSI.sub("", text))


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def clean_message(message: str) -> str:
    """Drop log prefixes (``[tag]``, timestamps, level words) and collapse whitespace."""
    text = message.strip()
    for _ in range(3):
        stripped = _LEVEL_PREFIX.sub("", _TIMESTAMP_PREFIX.sub("", _BRACKET_PREFIX.sub("", text)))
        if stripped == text:
            break
        text = stripped.strip()
    text = _WHITESPACE.sub(" ", text).strip()
    return truncate(text, MAX_MESSAGE_LENGTH)


def is_benign_line(line: str, command: Optional[str] = None) -> bool:
    """True for known-harmless output such as startup banners and command echoes."""
    stripped = line.strip()
    if not stripped:
        return False
    candidates = {stripped, LINE_TIMESTAMP.sub("", stripped, count=1)}
    if any(pattern.search(text) for text in candidates for pattern in BENIGN_PATTERNS):
        return True
    if command:
        return ECHO_PREFIX.sub("", stripped).strip() == command.strip()
    return False


def relative_source_path(path: str) -> str:
    """Strip URL/file prefixes and make a project path relative to its source root."""
    path = path.strip().strip("'\"`")
    if path.startswith("file://"):
        path = path[len("file://"):]
    path = re.sub(r"^[a-z][\w+.-]*://[^/]+", "", path)
    path = path.split("?", 1)[0]
    if "node_modules/" in path:
        return "node_modules/" + path.split("node_modules/", 1)[1]
    for root in _PROJECT_ROOTS:
        idx = path.rfind(f"/{root}/")
        if idx != -1:
            return path[idx + 1:]
    if path.startswith("./"):
        return path[2:]
    return path


# ── Stack frames ─────────────────────────────────────────────────────


def parse_frame(line: str) -> Optional[StackFrame]:
    """Parse one JS (``at fn (path:line:col)``) or Python (``File "..."``) frame."""
    if len(line) > MAX_FRAME_LINE:
        return None
    py = _PY_FRAME.match(line)
    if py:
        return StackFrame(py.group(1), int(py.group(2)), None, True)
    js = _JS_FRAME.match(line)
    if not js:
        return None
    location = js.group(1)
    if location.endswith(")") and "(" in location:
        location = location[location.rfind("(") + 1 : -1]
    parts = location.rsplit(":", 2)
    if len(parts) == 3 and parts[1].isdigit() and parts[2].isdigit():
        return StackFrame(parts[0], int(parts[1]), int(parts[2]), False)
    if len(parts) >= 2 and parts[-1].isdigit():
        return StackFrame(":".join(parts[:-1]), int(parts[-1]), None, False)
    return None


def is_project_path(path: str) -> bool:
    if path.startswith(_NON_PROJECT_PREFIXES):
        return False
    return not any(marker in path for marker in _NON_PROJECT_MARKERS)


def is_frame_line(line: str) -> bool:
    return bool(STACK_MARKER.match(line) or _PY_FRAME.match(line))


def _frame_block(lines: list[str], start: int) -> list[str]:
    block: list[str] = []
    in_python = False
    for line in lines[start:]:
        if not line.strip():
            break
        if is_frame_line(line):
            in_python = bool(_PY_FRAME.match(line))
            block.append(line.rstrip())
        elif in_python and line[:1].isspace():
            block.append(line.rstrip())
        else:
            break
    return block


def capture_stack_trace(lines: list[str], trigger: int) -> Optional[str]:
    """Collect the frame lines that follow the trigger line.

    Frames immediately after the trigger are taken greedily up to the first
    blank or non-frame line; if none follow directly, the first frame block
    further down the chunk is used instead.
    """
    block = _frame_block(lines, trigger + 1)
    if not block:
        for idx in range(trigger + 1, len(lines)):
            if is_frame_line(lines[idx]):
                block = _frame_block(lines, idx)
                break
    return "\n".join(block) if block else None


def find_project_frame(lines: list[str]) -> Optional[StackFrame]:
    """First frame that points into project source (innermost for Python)."""
    frames = [frame for frame in map(parse_frame, lines) if frame is not None]
    if any(frame.python for frame in frames):
        frames.reverse()
    for frame in frames:
        if is_project_path(frame.path):
            return frame
    return None


# ── Level and category inference ─────────────────────────────────────


def infer_log_level(line: str, stream: LogStream = LogStream.STDOUT) -> LogLevel:  # noqa: ARG001
    """Best-effort severity of a single output line."""
    sample = line[:MAX_LEVEL_LINE]
    for level, pattern in LOG_LEVEL_INDICATORS:
        if pattern.search(sample):
            return level
    return LogLevel.INFO


def infer_category(text: str) -> ErrorCategory:
    for category, pattern in CATEGORY_KEYWORDS:
        if pattern.search(text):
            return category
    return ErrorCategory.UNKNOWN


# ── Classifier ───────────────────────────────────────────────────────


class ErrorClassifier:
    """Ordered-rule error detector for dev-server output."""

    def __init__(self, rules: tuple[ErrorRule, ...] = ERROR_RULES) -> None:
        self._rules = rules

    def parse_error(
        self, raw_text: str | bytes, context: Optional[ErrorContext] = None
    ) -> Optional[ParsedError]:
        """Classify a chunk of output. Returns ``None`` when it holds no error."""
        try:
            return self._parse(raw_text, context or ErrorContext())
        except Exception as exc:
            logger.debug("classifier_failed", error=str(exc), error_type=type(exc).__name__)
            return None

    def _parse(self, raw_text: str | bytes, context: ErrorContext) -> Optional[ParsedError]:
        text = normalize_text(raw_text)
        if not text.strip():
            return None

        kept = [line for line in text.split("\n") if not is_benign_line(line, context.command)]
        text = "\n".join(kept).strip("\n")
        if not text.strip():
            return None
        lines = text.split("\n")

        for rule in self._rules:
            match = rule.matcher.search(text)
            if match is None:
                continue
            extracted = rule.extractor(match, text)
            if extracted is None:
                continue
            return self._from_rule(rule, match, extracted, text, lines, context)

        return self._fallback(text, lines, context)

    def _from_rule(
        self,
        rule: ErrorRule,
        match: re.Match[str],
        extracted: RuleMatch,
        text: str,
        lines: list[str],
        context: ErrorContext,
    ) -> ParsedError:
        trigger = text.count("\n", 0, match.start())
        stack = extracted.stack_trace or capture_stack_trace(lines, trigger)

        source_file = extracted.source_file
        line_number = extracted.line_number
        column_number = extracted.column_number
        if source_file is None:
            frame = find_project_frame(lines[trigger + 1:])
            if frame is not None:
                source_file, line_number, column_number = frame.path, frame.line, frame.column

        message = clean_message(extracted.message or line_at(text, match.start()))
        if not message:
            message = clean_message(next((ln for ln in lines if ln.strip()), rule.id))

        return ParsedError(
            category=extracted.category or rule.category,
            severity=extracted.severity or rule.severity,
            message=message,
            source_file=relative_source_path(source_file) if source_file else None,
            line_number=line_number,
            column_number=column_number,
            stack_trace=stack,
            raw_output=truncate(text, MAX_RAW_OUTPUT),
            pattern_id=rule.id,
            context=self._context(context, extracted.context),
        )

    def _fallback(self, text: str, lines: list[str], context: ErrorContext) -> Optional[ParsedError]:
        if context.stream != LogStream.STDERR and not STRONG_ERROR_INDICATORS.search(text):
            return None
        if FATAL_MARKER.search(text):
            severity = ErrorSeverity.FATAL
        elif ERROR_MARKER.search(text):
            severity = ErrorSeverity.ERROR
        elif WEAK_MARKER.search(text) or STACK_MARKER.search(text):
            severity = ErrorSeverity.WARNING
        else:
            return None

        markers = (FATAL_MARKER, ERROR_MARKER, WEAK_MARKER, STACK_MARKER)
        trigger = next(
            (idx for idx, line in enumerate(lines) if any(m.search(line) for m in markers)),
            0,
        )
        headline = lines[trigger]

        source_file = line_number = column_number = None
        location = INLINE_LOCATION.search(headline[:MAX_FRAME_LINE])
        frame = parse_frame(headline) or find_project_frame(lines[trigger + 1:])
        if frame is not None:
            source_file, line_number, column_number = frame.path, frame.line, frame.column
        elif location is not None:
            source_file = location.group(1)
            line_number = int(location.group(2))
            column_number = int(location.group(3)) if location.group(3) else None

        message = clean_message(headline) or clean_message(text)
        return ParsedError(
            category=infer_category(text),
            severity=severity,
            message=message or "Unrecognized error output",
            source_file=relative_source_path(source_file) if source_file else None,
            line_number=line_number,
            column_number=column_number,
            stack_trace=capture_stack_trace(lines, trigger),
            raw_output=truncate(text, MAX_RAW_OUTPUT),
            pattern_id=None,
            context=self._context(context, {"fallback_detection": True}),
        )

    @staticmethod
    def _context(context: ErrorContext, extra: dict) -> dict:
        data: dict = {"stream": str(context.stream)}
        if context.source:
            data["source"] = context.source
        data.update(extra)
        return data


_default_classifier = ErrorClassifier()


def parse_error(raw_text: str | bytes, context: Optional[ErrorContext] = None) -> Optional[ParsedError]:
    """Classify ``raw_text`` with the default rule table."""
    return _default_classifier.parse_error(raw_text, context)
