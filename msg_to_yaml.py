"""
Chat Message to YAML Converter
Command-line entry point: parses a saved chat message into content blocks and
dumps them as YAML, JSON, or normalized markdown.

Usage:
    uv run msg_to_yaml.py message.md                      # YAML to stdout
    uv run msg_to_yaml.py message.md blocks.yaml          # YAML to a file
    uv run msg_to_yaml.py message.md --format json        # JSON output
    uv run msg_to_yaml.py message.md --images ./images    # resolve <image-uuid> tags
    uv run msg_to_yaml.py message.md --config parse.yaml  # parser/render options

Config file (YAML, every key optional):
    parser:
      isolate_open_blocks: true
    render:
      inline_math_style: paren
      block_math_style: brackets
      embed_images_base64: false
      include_line_numbers: true
"""

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from image_store import ImageStore
from message_parser import ParserConfig, parse_message_file
from message_renderer import RenderConfig, blocks_to_records, render_to_markdown


# Logger
logger = logging.getLogger("msg_to_yaml")


# ═══════════════════════════════════════════════════════════════════════════════
# LOGGING SETUP
# ═══════════════════════════════════════════════════════════════════════════════


class LogFormatter(logging.Formatter):
    """Custom log formatter with level-based prefixes"""

    PREFIXES = {
        logging.DEBUG: "[DEBUG]",
        logging.INFO: "[INFO]",
        logging.WARNING: "[WARNING]",
        logging.ERROR: "[ERROR]",
        logging.CRITICAL: "[CRITICAL]",
    }

    def format(self, record: logging.LogRecord) -> str:
        prefix = self.PREFIXES.get(record.levelno, "[LOG]")
        return f"{prefix} {record.getMessage()}"


def setup_logging(verbose: bool = False):
    """Route this tool's and the library modules' logs to stderr"""
    level = logging.DEBUG if verbose else logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(LogFormatter())
    for name in ("msg_to_yaml", "message_parser", "message_renderer", "image_store"):
        named = logging.getLogger(name)
        named.setLevel(level)
        named.handlers.clear()
        named.addHandler(handler)


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG FILE
# ═══════════════════════════════════════════════════════════════════════════════


def _build_section(cls, section: Any, name: str):
    """Build a config dataclass from one mapping section, checking keys and types"""
    if section is None:
        return cls()
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' section must be a mapping")

    fields = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(section) - set(fields))
    if unknown:
        raise ValueError(f"Unknown '{name}' option(s): {', '.join(map(str, unknown))}")

    for key, value in section.items():
        default = fields[key].default
        if type(value) is not type(default):
            raise ValueError(
                f"'{name}.{key}' must be {type(default).__name__}, got {type(value).__name__}"
            )

    return cls(**section)


def load_config(path: Path) -> Tuple[ParserConfig, RenderConfig]:
    """
    Load parser and render options from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML
        ValueError: If the structure or a value is invalid
    """
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping")

    unknown = sorted(set(data) - {"parser", "render"})
    if unknown:
        raise ValueError(f"Unknown config section(s): {', '.join(map(str, unknown))}")

    parser_config = _build_section(ParserConfig, data.get("parser"), "parser")
    render_config = _build_section(RenderConfig, data.get("render"), "render")
    return parser_config, render_config


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT
# ═══════════════════════════════════════════════════════════════════════════════


def format_blocks(blocks: List, output_format: str, render_config: RenderConfig) -> str:
    """Serialize parsed blocks in the requested output format"""
    if output_format == "markdown":
        return render_to_markdown(blocks, render_config) + "\n"

    records: List[Dict[str, Any]] = blocks_to_records(blocks, render_config)
    if output_format == "json":
        return json.dumps(records, ensure_ascii=False, indent=2) + "\n"
    return yaml.safe_dump(records, allow_unicode=True, sort_keys=False)


# ═══════════════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════════════


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser"""
    parser = argparse.ArgumentParser(
        description="Parse a chat message into typed content blocks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    uv run msg_to_yaml.py reply.md                          # YAML to stdout
    uv run msg_to_yaml.py reply.md out.json --format json   # JSON file
    uv run msg_to_yaml.py reply.md --images ./images --embed-images
        """,
    )

    parser.add_argument("input_file", help="Message file to parse")
    parser.add_argument(
        "output_file",
        nargs="?",
        help="Output path (stdout if omitted)",
    )

    parser.add_argument(
        "--format",
        choices=["yaml", "json", "markdown"],
        default="yaml",
        dest="output_format",
        help="Output format (default: yaml)",
    )
    parser.add_argument(
        "--images",
        metavar="DIR",
        help="Directory holding <uuid>.<ext> image files",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="YAML file with 'parser' and 'render' options",
    )
    parser.add_argument(
        "--embed-images",
        action="store_true",
        help="Include resolved images as base64 data URIs",
    )
    parser.add_argument(
        "--isolate-open-blocks",
        action="store_true",
        help="Treat every line inside an open code/math/thinking block as content",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) output",
    )

    return parser


def run(args) -> int:
    """
    Parse one message file and write the result.

    Returns:
        Exit code (0 = success, 1 = error)
    """
    try:
        if args.config:
            parser_config, render_config = load_config(Path(args.config))
        else:
            parser_config, render_config = ParserConfig(), RenderConfig()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        logger.error("Invalid config %s: %s", args.config, e)
        return 1

    if args.isolate_open_blocks:
        parser_config = dataclasses.replace(parser_config, isolate_open_blocks=True)
    if args.embed_images:
        render_config = dataclasses.replace(render_config, embed_images_base64=True)

    resolver: Optional[ImageStore] = None
    if args.images:
        images_dir = Path(args.images)
        if not images_dir.is_dir():
            logger.error("Image directory not found: %s", images_dir)
            return 1
        resolver = ImageStore(images_dir)

    try:
        blocks = parse_message_file(args.input_file, resolver=resolver, config=parser_config)
    except FileNotFoundError as e:
        logger.error("%s", e)
        return 1
    except UnicodeDecodeError as e:
        logger.error("Cannot decode %s: %s", args.input_file, e)
        return 1

    output = format_blocks(blocks, args.output_format, render_config)

    if args.output_file:
        output_path = Path(args.output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(output, encoding="utf-8")
        logger.info("Wrote %d blocks to %s", len(blocks), output_path)
    else:
        sys.stdout.write(output)

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
