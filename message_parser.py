"""
Message Parser Module for Chat Message Block Parser
Splits a raw chat message (markdown-like text with fenced code, pipe tables,
LaTeX math, <think> sections and image references) into an ordered list of
typed content blocks that can be rendered independently.

Parsing is a single pass over the lines of the message:
    - LineClassifier decides the category of each line (no state)
    - BlockAssembler buffers lines per mode and flushes blocks on transitions
    - InlineMathScanner splits plain prose lines on $...$ and \\(...\\) spans

Malformed input never raises; irregular markup degrades to plain text.

Dependencies:
    Required: charset-normalizer (encoding detection for parse_message_file)
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Iterator, List, Optional
import logging
import re
import uuid

from charset_normalizer import from_bytes


logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════


class BlockType(Enum):
    """Types of parsed content blocks"""

    TEXT = auto()
    CODE = auto()
    TABLE = auto()
    FORMULA = auto()
    THINKING = auto()
    IMAGE = auto()


class LineType(Enum):
    """Context-free category of a single source line"""

    TEXT = auto()
    TABLE_ROW = auto()
    CODE_FENCE = auto()
    MATH_BLOCK_OPEN = auto()  # a line that is exactly \[
    MATH_LINE = auto()  # \[ with content on the same line, or a \] closer
    THINKING = auto()
    IMAGE_REFERENCE = auto()


# ═══════════════════════════════════════════════════════════════════════════════
# DATA MODELS
# ═══════════════════════════════════════════════════════════════════════════════
#
# `line` is the 0-based index of the first source line of a block. It is kept
# out of equality so blocks compare on content only.


@dataclass
class ContentBlock:
    """Base class for parsed message blocks"""

    block_type: ClassVar[BlockType]


@dataclass
class TextBlock(ContentBlock):
    """Literal prose"""

    block_type: ClassVar[BlockType] = BlockType.TEXT

    text: str
    line: int = field(default=0, compare=False, repr=False)


@dataclass
class CodeBlock(ContentBlock):
    """A fenced code block"""

    block_type: ClassVar[BlockType] = BlockType.CODE

    code: str
    language: Optional[str] = None
    indent: int = 0  # leading characters stripped from every body line
    line: int = field(default=0, compare=False, repr=False)


@dataclass
class TableBlock(ContentBlock):
    """A pipe table with at least one data row"""

    block_type: ClassVar[BlockType] = BlockType.TABLE

    header: List[str]
    rows: List[List[str]]
    line: int = field(default=0, compare=False, repr=False)


@dataclass
class FormulaBlock(ContentBlock):
    """LaTeX source of a block formula or of one inline math span"""

    block_type: ClassVar[BlockType] = BlockType.FORMULA

    latex: str
    is_block: bool = field(default=False, compare=False)
    line: int = field(default=0, compare=False, repr=False)


@dataclass
class ThinkingBlock(ContentBlock):
    """Content of a <think> section"""

    block_type: ClassVar[BlockType] = BlockType.THINKING

    content: str
    expanded: bool = False  # UI state, always starts collapsed
    line: int = field(default=0, compare=False, repr=False)


@dataclass
class ImageBlock(ContentBlock):
    """An image reference that the resolver found a resource for"""

    block_type: ClassVar[BlockType] = BlockType.IMAGE

    identifier: uuid.UUID
    resource: Any = None
    line: int = field(default=0, compare=False, repr=False)


@dataclass(frozen=True)
class MathSpan:
    """An inline math match: [start, end) in the line plus the raw interior"""

    start: int
    end: int
    content: str


@dataclass(frozen=True)
class ParserConfig:
    """Configuration for message parsing."""

    # False: classify every line on its own text, even inside an open block.
    # True: while a code/math/thinking block is open, only its own closing
    # markup is structural and everything else is block content.
    isolate_open_blocks: bool = False


class ImageResolutionError(Exception):
    """Raised by an image resolver that failed to look up an identifier"""


ImageResolver = Callable[[uuid.UUID], Optional[Any]]


# ═══════════════════════════════════════════════════════════════════════════════
# LINE CLASSIFIER
# ═══════════════════════════════════════════════════════════════════════════════


class LineClassifier:
    """Assigns a LineType to a line, by fixed priority, on its trimmed text"""

    THINK_OPEN = "<think>"
    THINK_CLOSE = "</think>"
    CODE_FENCE = "```"
    MATH_OPEN = "\\["
    MATH_CLOSE = "\\]"
    IMAGE_OPEN = "<image-uuid>"
    IMAGE_CLOSE = "</image-uuid>"

    @classmethod
    def classify(cls, line: str) -> LineType:
        """
        Classify one line (without trailing newline).

        Whitespace is trimmed for matching only; callers keep the raw line.
        """
        trimmed = line.strip()

        if trimmed.startswith(cls.THINK_OPEN):
            return LineType.THINKING
        if trimmed.startswith(cls.CODE_FENCE):
            return LineType.CODE_FENCE
        if trimmed.startswith("|"):
            return LineType.TABLE_ROW
        if trimmed.startswith(cls.MATH_OPEN):
            if trimmed.replace(" ", "") == cls.MATH_OPEN:
                return LineType.MATH_BLOCK_OPEN
            return LineType.MATH_LINE
        if trimmed.startswith(cls.MATH_CLOSE):
            return LineType.MATH_LINE
        if trimmed.startswith(cls.IMAGE_OPEN):
            return LineType.IMAGE_REFERENCE
        return LineType.TEXT


# ═══════════════════════════════════════════════════════════════════════════════
# TABLE PARSER
# ═══════════════════════════════════════════════════════════════════════════════


class TableParser:
    """Splits pipe-table rows into cells"""

    _DELIMITER_CHARS = frozenset("-:")

    @staticmethod
    def split_row(line: str) -> List[str]:
        """Split a table row into trimmed cells, dropping empty ones"""
        return [c.strip() for c in line.split("|") if c.strip()]

    @classmethod
    def is_delimiter_row(cls, cells: List[str]) -> bool:
        """A row made only of '-' and ':' cells (|---|:--:|) carries no data"""
        return all(set(cell) <= cls._DELIMITER_CHARS for cell in cells)


# ═══════════════════════════════════════════════════════════════════════════════
# INLINE MATH SCANNER
# ═══════════════════════════════════════════════════════════════════════════════


class InlineMathScanner:
    """
    Splits one prose line into Text and Formula fragments.

    Handles:
        - Dollar spans: $ ... $ (shortest match, $$ is an empty formula)
        - Paren spans: \\( ... \\) (shortest match)
        - Escaped delimiters: \\$ and \\\\( never open a span, \\$ and \\\\)
          never close one

    A delimiter counts as escaped when the single character before it is a
    backslash; runs of backslashes are not counted for parity.
    """

    _UNESCAPES = (("\\$", "$"), ("\\(", "("), ("\\)", ")"))

    @staticmethod
    def _is_escaped(line: str, index: int) -> bool:
        return index > 0 and line[index - 1] == "\\"

    @classmethod
    def _dollar_span_at(cls, line: str, start: int) -> Optional[MathSpan]:
        if line[start] != "$" or cls._is_escaped(line, start):
            return None
        for end in range(start + 1, len(line)):
            if line[end] == "$" and not cls._is_escaped(line, end):
                return MathSpan(start, end + 1, line[start + 1 : end])
        return None

    @classmethod
    def _paren_span_at(cls, line: str, start: int) -> Optional[MathSpan]:
        if not line.startswith("\\(", start) or cls._is_escaped(line, start):
            return None
        end = line.find("\\)", start + 2)
        while end != -1:
            if not cls._is_escaped(line, end):
                return MathSpan(start, end + 2, line[start + 2 : end])
            end = line.find("\\)", end + 1)
        return None

    @classmethod
    def find_spans(cls, line: str) -> Iterator[MathSpan]:
        """
        Yield non-overlapping math spans from left to right.

        At each position a dollar span is tried first, then a paren span. Once
        an opener of one kind finds no closer, no later opener of that kind
        can, so that kind is not tried again.
        """
        pos = 0
        dollar_open = "$" in line
        paren_open = "\\(" in line

        while pos < len(line) and (dollar_open or paren_open):
            span = None
            for index in range(pos, len(line)):
                char = line[index]
                if dollar_open and char == "$" and not cls._is_escaped(line, index):
                    span = cls._dollar_span_at(line, index)
                    if span is not None:
                        break
                    dollar_open = False
                if paren_open and char == "\\" and line.startswith("\\(", index):
                    if cls._is_escaped(line, index):
                        continue
                    span = cls._paren_span_at(line, index)
                    if span is not None:
                        break
                    paren_open = False
                if not (dollar_open or paren_open):
                    break

            if span is None:
                return
            yield span
            pos = span.end

    @classmethod
    def unescape(cls, content: str) -> str:
        """Turn \\$, \\( and \\) inside a formula into $, ( and )"""
        for escaped, plain in cls._UNESCAPES:
            content = content.replace(escaped, plain)
        return content

    @classmethod
    def scan(cls, line: str, line_number: int = 0) -> List[ContentBlock]:
        """
        Split a prose line into fragments.

        Returns:
            Text/Formula blocks in source order. A line without math, including
            an empty line, comes back as a single TextBlock.
        """
        fragments: List[ContentBlock] = []
        last_end = 0

        for span in cls.find_spans(line):
            before = line[last_end : span.start]
            if before:
                fragments.append(TextBlock(before, line=line_number))
            # Empty or blank spans still produce a formula
            fragments.append(FormulaBlock(cls.unescape(span.content), line=line_number))
            last_end = span.end

        if not fragments:
            return [TextBlock(line, line=line_number)]

        after = line[last_end:]
        if after:
            fragments.append(TextBlock(after, line=line_number))

        return fragments


# ═══════════════════════════════════════════════════════════════════════════════
# BLOCK ASSEMBLER
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class _TableAccumulator:
    """Rows of the table currently being read"""

    header: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)
    header_captured: bool = False
    start_line: int = 0


class BlockAssembler:
    """
    Line-by-line state machine that turns a message into content blocks.

    Holds one buffer per mode (text, code, table, math, thinking). Each buffer
    has a single flush method that is a no-op when the buffer is empty. An
    assembler is good for one message; MessageParser creates a fresh one per
    call.
    """

    _IMAGE_TAG_RE = re.compile(r"<image-uuid>(.*?)</image-uuid>")
    _CANONICAL_UUID_RE = re.compile(
        r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
    )

    def __init__(
        self,
        resolver: Optional[ImageResolver] = None,
        config: Optional[ParserConfig] = None,
    ):
        self.resolver = resolver
        self.config = config or ParserConfig()
        self.blocks: List[ContentBlock] = []

        self.code_open = False
        self.math_open = False
        self.thinking_open = False

        self._line_number = -1
        self._text_lines: List[str] = []
        self._text_start = 0
        self._code_lines: List[str] = []
        self._code_language: Optional[str] = None
        self._code_indent = 0
        self._code_start = 0
        self._math_lines: List[str] = []
        self._math_start = 0
        self._thinking_lines: List[str] = []
        self._thinking_start = 0
        self._table = _TableAccumulator()

    # ── Public API ──────────────────────────────────────────────────────────

    def feed(self, line: str) -> None:
        """Process one source line (without its newline)"""
        self._line_number += 1
        line_type = self._effective_type(line, LineClassifier.classify(line))

        if line_type is LineType.CODE_FENCE:
            self._handle_code_fence(line)
        elif line_type is LineType.TABLE_ROW:
            self._handle_table_row(line)
        elif line_type is LineType.MATH_BLOCK_OPEN:
            self._flush_text()
            self._flush_table()
            self.math_open = True
            self._math_start = self._line_number
        elif line_type is LineType.MATH_LINE:
            self._handle_math_line(line)
        elif line_type is LineType.THINKING:
            self._handle_thinking_open(line)
        elif line_type is LineType.IMAGE_REFERENCE:
            self._handle_image_reference(line)
        else:
            self._handle_text(line)

    def finish(self) -> List[ContentBlock]:
        """Flush whatever is still buffered and return the blocks"""
        if self.code_open:
            logger.debug("Unterminated code fence opened at line %d", self._code_start)
        if self.math_open:
            logger.debug("Unterminated math block opened at line %d", self._math_start)
        if self.thinking_open:
            logger.debug("Unterminated thinking block opened at line %d", self._thinking_start)

        self._flush_text()
        self._flush_code()
        self._flush_math()
        self._flush_table()
        self._flush_thinking()

        self.code_open = self.math_open = self.thinking_open = False
        return self.blocks

    # ── Classification gating ───────────────────────────────────────────────

    def _effective_type(self, line: str, line_type: LineType) -> LineType:
        """Route structural lines into an open block when isolation is on"""
        if not self.config.isolate_open_blocks or line_type is LineType.TEXT:
            return line_type

        if self.thinking_open:
            return LineType.TEXT
        if self.code_open and line_type is not LineType.CODE_FENCE:
            return LineType.TEXT
        if self.math_open and line_type not in (LineType.MATH_LINE, LineType.MATH_BLOCK_OPEN):
            return LineType.TEXT
        return line_type

    # ── Line handlers ───────────────────────────────────────────────────────

    def _handle_code_fence(self, line: str) -> None:
        if self.code_open:
            self._flush_code()
            self.code_open = False
            return

        self._flush_text()
        self._flush_table()

        stripped = line.strip()
        language = stripped.replace(LineClassifier.CODE_FENCE, "").strip()
        self._code_language = language or None
        self._code_indent = len(line) - len(line.lstrip())
        self._code_start = self._line_number + 1
        self.code_open = True

    def _handle_table_row(self, line: str) -> None:
        self._flush_text()

        cells = TableParser.split_row(line)
        if TableParser.is_delimiter_row(cells):
            return

        if not self._table.header_captured:
            self._table.header = cells
            self._table.header_captured = True
            self._table.start_line = self._line_number
        else:
            self._table.rows.append(cells)

    def _handle_math_line(self, line: str) -> None:
        self._flush_text()
        self._flush_table()

        if line.strip().startswith(LineClassifier.MATH_CLOSE):
            # an opened-then-closed block is a formula even when empty
            was_open = self.math_open
            self.math_open = False
            self._flush_math(force=was_open)
            return

        self._append_math(line)
        if not self.math_open:
            # \[ ... \] on a single line
            self._flush_math()

    def _handle_thinking_open(self, line: str) -> None:
        self._flush_text()
        self._flush_table()

        close_at = line.find(LineClassifier.THINK_CLOSE)
        if close_at != -1:
            content = self._strip_thinking_tags(line[:close_at]).strip()
            self.blocks.append(ThinkingBlock(content, line=self._line_number))

            remainder = line[close_at + len(LineClassifier.THINK_CLOSE) :]
            if remainder.strip():
                self._emit_prose(remainder)
            return

        self.thinking_open = True
        self._thinking_start = self._line_number
        first = line.replace(LineClassifier.THINK_OPEN, "")
        if first:
            self._thinking_lines.append(first)

    def _handle_image_reference(self, line: str) -> None:
        identifier = self._parse_image_identifier(line)
        resource = self._resolve_image(identifier) if identifier is not None else None

        if resource is None:
            logger.debug("Image reference at line %d kept as text", self._line_number)
            self._append_text(line)
            return

        self._flush_text()
        self._flush_table()
        self.blocks.append(ImageBlock(identifier, resource, line=self._line_number))

    def _handle_text(self, line: str) -> None:
        if self.thinking_open:
            self._handle_thinking_text(line)
        elif self.code_open:
            self._code_lines.append(line[self._code_indent :] if self._code_indent else line)
        elif self.math_open:
            self._append_math(line)
        else:
            self._emit_prose(line)

    def _handle_thinking_text(self, line: str) -> None:
        close_at = line.find(LineClassifier.THINK_CLOSE)
        if close_at == -1:
            self._thinking_lines.append(line)
            return

        before = line[:close_at]
        if before:
            self._thinking_lines.append(before)
        self.thinking_open = False
        self._flush_thinking()

        remainder = line[close_at + len(LineClassifier.THINK_CLOSE) :]
        if remainder.strip():
            self._emit_prose(remainder)

    def _emit_prose(self, line: str) -> None:
        self._flush_table()
        self._flush_text()
        self.blocks.extend(InlineMathScanner.scan(line, self._line_number))

    # ── Buffers ─────────────────────────────────────────────────────────────

    def _append_text(self, line: str) -> None:
        if not self._text_lines:
            self._text_start = self._line_number
        self._text_lines.append(line)

    def _append_math(self, line: str) -> None:
        if not self._math_lines and not self.math_open:
            self._math_start = self._line_number
        self._math_lines.append(
            line.replace(LineClassifier.MATH_OPEN, "").replace(LineClassifier.MATH_CLOSE, "")
        )

    def _flush_text(self) -> None:
        if self._text_lines:
            self.blocks.append(TextBlock("\n".join(self._text_lines), line=self._text_start))
            self._text_lines = []

    def _flush_code(self) -> None:
        if self._code_lines:
            self.blocks.append(
                CodeBlock(
                    "\n".join(self._code_lines),
                    language=self._code_language,
                    indent=self._code_indent,
                    line=self._code_start,
                )
            )
            self._code_lines = []

    def _flush_math(self, force: bool = False) -> None:
        if self._math_lines or force:
            self.blocks.append(
                FormulaBlock("\n".join(self._math_lines), is_block=True, line=self._math_start)
            )
            self._math_lines = []

    def _flush_table(self) -> None:
        table = self._table
        if table.rows:
            self.blocks.append(TableBlock(table.header, table.rows, line=table.start_line))
        elif table.header_captured:
            logger.debug(
                "Table header at line %d has no data rows, discarded: %s",
                table.start_line,
                table.header,
            )
        if table.header_captured:
            self._table = _TableAccumulator()

    def _flush_thinking(self) -> None:
        if self._thinking_lines:
            content = self._strip_thinking_tags("\n".join(self._thinking_lines)).strip()
            self.blocks.append(ThinkingBlock(content, line=self._thinking_start))
            self._thinking_lines = []

    # ── Helpers ─────────────────────────────────────────────────────────────

    @staticmethod
    def _strip_thinking_tags(text: str) -> str:
        return text.replace(LineClassifier.THINK_OPEN, "").replace(LineClassifier.THINK_CLOSE, "")

    @classmethod
    def _parse_image_identifier(cls, line: str) -> Optional[uuid.UUID]:
        m = cls._IMAGE_TAG_RE.search(line)
        if not m:
            return None
        raw = m.group(1)
        if not cls._CANONICAL_UUID_RE.match(raw):
            return None
        return uuid.UUID(raw)

    def _resolve_image(self, identifier: uuid.UUID) -> Optional[Any]:
        if self.resolver is None:
            return None
        try:
            return self.resolver(identifier)
        except ImageResolutionError as e:
            logger.warning("Image %s could not be resolved: %s", identifier, e)
            return None
        except Exception as e:
            logger.warning(
                "Image resolver failed for %s: %s: %s",
                identifier,
                type(e).__name__,
                e,
                exc_info=True,
            )
            return None


# ═══════════════════════════════════════════════════════════════════════════════
# MESSAGE PARSER (MAIN)
# ═══════════════════════════════════════════════════════════════════════════════


class MessageParser:
    """Main parser for chat messages"""

    def __init__(
        self,
        resolver: Optional[ImageResolver] = None,
        config: Optional[ParserConfig] = None,
    ):
        self.resolver = resolver
        self.config = config or ParserConfig()

    def parse(self, content: str) -> List[ContentBlock]:
        """
        Parse a message into content blocks.

        Args:
            content: The raw message body

        Returns:
            Blocks in source order. An empty message yields [TextBlock("")].
        """
        assembler = BlockAssembler(resolver=self.resolver, config=self.config)
        # split keeps empty lines in place; "" gives [""]
        for line in content.split("\n"):
            assembler.feed(line)
        return assembler.finish()


def parse_message(
    content: str,
    resolver: Optional[ImageResolver] = None,
    config: Optional[ParserConfig] = None,
) -> List[ContentBlock]:
    """Parse a message string with a one-off MessageParser"""
    return MessageParser(resolver=resolver, config=config).parse(content)


def count_blocks(blocks: List[ContentBlock]) -> Dict[str, int]:
    """Count blocks per BlockType name, in enum order"""
    counts = {block_type.name.lower(): 0 for block_type in BlockType}
    for block in blocks:
        counts[block.block_type.name.lower()] += 1
    return counts


# ═══════════════════════════════════════════════════════════════════════════════
# ENCODING UTILITIES
# ═══════════════════════════════════════════════════════════════════════════════


def _read_with_encoding(file_path: str) -> str:
    """
    Read file content with encoding detection.

    Strategy:
        1. charset_normalizer: statistical detection
        2. BOM detection: UTF-8 BOM
        3. Sequential fallback: UTF-8 → CP1252

    Raises:
        FileNotFoundError: If the file does not exist
        UnicodeDecodeError: If all detection methods fail
    """
    raw_bytes = Path(file_path).read_bytes()

    if not raw_bytes:
        return ""

    result = from_bytes(raw_bytes).best()
    if result is not None and result.encoding:
        logger.debug("Encoding detected by charset_normalizer: %s", result.encoding)
        return str(result)

    if raw_bytes.startswith(b"\xef\xbb\xbf"):
        return raw_bytes.decode("utf-8-sig")

    encodings = ["utf-8", "cp1252"]
    for enc in encodings:
        try:
            return raw_bytes.decode(enc)
        except UnicodeDecodeError:
            continue

    raise UnicodeDecodeError(
        "multiple",
        b"",
        0,
        1,
        f"Failed to decode {file_path} with encodings: {encodings}",
    )


# ═══════════════════════════════════════════════════════════════════════════════
# CONVENIENCE FUNCTION
# ═══════════════════════════════════════════════════════════════════════════════


def parse_message_file(
    file_path: str,
    resolver: Optional[ImageResolver] = None,
    config: Optional[ParserConfig] = None,
) -> List[ContentBlock]:
    """
    Parse a message stored in a file.

    Line endings are normalized to \\n before parsing.

    Raises:
        FileNotFoundError: If the file does not exist
        UnicodeDecodeError: If none of the attempted encodings work
    """
    content = _read_with_encoding(file_path)
    content = content.replace("\r\n", "\n")

    blocks = parse_message(content, resolver=resolver, config=config)

    counts = count_blocks(blocks)
    logger.info(
        "Parsed %s: %d blocks (%s)",
        file_path,
        len(blocks),
        ", ".join(f"{name}={count}" for name, count in counts.items() if count),
    )

    return blocks
