"""
Message Renderer Module for Chat Message Block Parser
Turns a parsed block list back into text.

Two outputs:
    - Normalized markdown (MessageRenderer.render), one source line per
      output line for prose, canonical markup for code/tables/math/thinking
    - Plain dict records (blocks_to_records) for YAML / JSON dumps
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from image_store import StoredImage
from message_parser import (
    CodeBlock,
    ContentBlock,
    FormulaBlock,
    ImageBlock,
    LineClassifier,
    TableBlock,
    TextBlock,
    ThinkingBlock,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderConfig:
    """Configuration for block rendering."""

    inline_math_style: str = "dollar"  # dollar | paren
    block_math_style: str = "brackets"  # brackets | dollars
    embed_images_base64: bool = False
    include_line_numbers: bool = False

    def __post_init__(self):
        if self.inline_math_style not in ("dollar", "paren"):
            raise ValueError("inline_math_style must be one of: dollar, paren")
        if self.block_math_style not in ("brackets", "dollars"):
            raise ValueError("block_math_style must be one of: brackets, dollars")


class FormulaRenderer:
    """Renders inline and block formulas."""

    def __init__(self, config: RenderConfig):
        self.config = config

    def render(self, formula: FormulaBlock) -> str:
        if formula.is_block:
            if self.config.block_math_style == "dollars":
                return f"$$\n{formula.latex}\n$$"
            return f"{LineClassifier.MATH_OPEN}\n{formula.latex}\n{LineClassifier.MATH_CLOSE}"

        if self.config.inline_math_style == "paren":
            return f"\\({formula.latex}\\)"
        # A bare $ inside the formula would close the span early
        return "${}$".format(formula.latex.replace("$", "\\$"))


class CodeRenderer:
    """Renders code blocks as fences at their original indent."""

    @staticmethod
    def render(code: CodeBlock) -> str:
        prefix = " " * code.indent
        lines = [f"{prefix}{LineClassifier.CODE_FENCE}{code.language or ''}"]
        for line in code.code.split("\n"):
            lines.append(f"{prefix}{line}" if line else "")
        lines.append(f"{prefix}{LineClassifier.CODE_FENCE}")
        return "\n".join(lines)


class TableRenderer:
    """Renders table blocks as pipe tables."""

    @staticmethod
    def render(table: TableBlock) -> str:
        lines = ["| " + " | ".join(table.header) + " |"]
        lines.append("| " + " | ".join(["---"] * len(table.header)) + " |")
        for row in table.rows:
            lines.append("| " + " | ".join(row) + " |")
        return "\n".join(lines)


class MessageRenderer:
    """Main renderer for converting content blocks to markdown."""

    def __init__(self, config: Optional[RenderConfig] = None):
        self.config = config or RenderConfig()
        self.formula_renderer = FormulaRenderer(self.config)

    def render(self, blocks: List[ContentBlock]) -> str:
        """
        Render blocks to a markdown string.

        Inline fragments (text and inline formulas) that came from the same
        source line are joined back into that line.
        """
        parts: List[str] = []
        inline_line: Optional[int] = None

        for block in blocks:
            rendered = self._render_block(block)
            inline = self._is_inline(block)
            if inline and parts and inline_line == block.line:
                parts[-1] += rendered
            else:
                parts.append(rendered)
            inline_line = block.line if inline else None

        return "\n".join(parts)

    @staticmethod
    def _is_inline(block: ContentBlock) -> bool:
        if isinstance(block, TextBlock):
            return True
        return isinstance(block, FormulaBlock) and not block.is_block

    def _render_block(self, block: ContentBlock) -> str:
        if isinstance(block, TextBlock):
            return block.text
        elif isinstance(block, FormulaBlock):
            return self.formula_renderer.render(block)
        elif isinstance(block, CodeBlock):
            return CodeRenderer.render(block)
        elif isinstance(block, TableBlock):
            return TableRenderer.render(block)
        elif isinstance(block, ThinkingBlock):
            return f"{LineClassifier.THINK_OPEN}\n{block.content}\n{LineClassifier.THINK_CLOSE}"
        elif isinstance(block, ImageBlock):
            return f"{LineClassifier.IMAGE_OPEN}{block.identifier}{LineClassifier.IMAGE_CLOSE}"
        else:
            logger.warning("Unknown block type: %s", type(block).__name__)
            return ""


# ═══════════════════════════════════════════════════════════════════════════════
# RECORD EXPORT
# ═══════════════════════════════════════════════════════════════════════════════


def block_to_record(block: ContentBlock, config: Optional[RenderConfig] = None) -> Dict[str, Any]:
    """Convert one block to a plain dict (safe for yaml.safe_dump / json.dumps)"""
    config = config or RenderConfig()
    record: Dict[str, Any] = {"type": block.block_type.name.lower()}

    if isinstance(block, TextBlock):
        record["text"] = block.text
    elif isinstance(block, CodeBlock):
        record["language"] = block.language
        record["indent"] = block.indent
        record["code"] = block.code
    elif isinstance(block, TableBlock):
        record["header"] = list(block.header)
        record["rows"] = [list(row) for row in block.rows]
    elif isinstance(block, FormulaBlock):
        record["latex"] = block.latex
        record["display"] = block.is_block
    elif isinstance(block, ThinkingBlock):
        record["content"] = block.content
        record["expanded"] = block.expanded
    elif isinstance(block, ImageBlock):
        record["identifier"] = str(block.identifier)
        resource = block.resource
        if isinstance(resource, StoredImage):
            record["mime_type"] = resource.mime_type
            record["path"] = str(resource.path)
            if config.embed_images_base64:
                record["data_uri"] = resource.to_data_uri()

    if config.include_line_numbers:
        record["line"] = block.line + 1

    return record


def blocks_to_records(
    blocks: List[ContentBlock], config: Optional[RenderConfig] = None
) -> List[Dict[str, Any]]:
    return [block_to_record(block, config) for block in blocks]


def render_to_markdown(blocks: List[ContentBlock], config: Optional[RenderConfig] = None) -> str:
    """Render blocks to normalized markdown with a one-off MessageRenderer"""
    return MessageRenderer(config).render(blocks)
