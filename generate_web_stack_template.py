#!/usr/bin/env python3
"""Assemble the web stack CloudFormation template from userdata + ERB template.

Reads templates/web_stack_autoscale.tmpl.erb, interpolates the web server and
social worker bootstrap scripts into its <%= ... %> slots, and writes
json/web_stack_autoscale.tmpl.json.

Usage:
    python3 generate_web_stack_template.py    # Build json/web_stack_autoscale.tmpl.json
"""

import json
import logging
import os
import re
import stat
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import jinja2

TEMPLATE = "./templates/web_stack_autoscale.tmpl.erb"
OUTPUT = "./json/web_stack_autoscale.tmpl.json"
FRAGMENTS = {
    "web_server_bootstrap_script": "./user-data/web_server-userdata.txt",
    "socialworker_bootstrap_script": "./user-data/socialworker-userdata.txt",
}

TAG_RE = re.compile(r"<%.*?%>", re.DOTALL)

log = logging.getLogger("web-stack-template")


# ── Structured JSON logging ──────────────────────────────
class JSONFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(level: int = logging.INFO):
    """Send JSON log lines to stderr; stdout is reserved for the output path."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter())
    log.handlers = [handler]
    log.setLevel(level)
    log.propagate = False


# ── Errors ───────────────────────────────────────────────
class BuildError(Exception):
    """Raised when an input can't be read or the output can't be written."""


class TemplateRenderError(BuildError):
    """Raised when the template is malformed or references an unknown name."""


# ── Configuration ────────────────────────────────────────
@dataclass(frozen=True)
class BuildConfig:
    root: Path
    template: str = TEMPLATE
    output: str = OUTPUT
    fragments: dict[str, str] = field(default_factory=lambda: dict(FRAGMENTS))

    def resolve(self, relpath: str) -> Path:
        return self.root / relpath


# ── Rendering ────────────────────────────────────────────
def _erb_environment() -> jinja2.Environment:
    # ERB delimiters; the lexer matches "<%=" and "<%#" before "<%".
    return jinja2.Environment(
        variable_start_string="<%=",
        variable_end_string="%>",
        block_start_string="<%",
        block_end_string="%>",
        comment_start_string="<%#",
        comment_end_string="%>",
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )


def render(template_text: str, values: dict[str, str], name: str = "<template>") -> str:
    """Substitute *values* into the ERB-style *template_text*.

    Only the names in *values* are in scope. Text outside the placeholders
    comes through unchanged.
    """
    # jinja folds \r\n and \r into "\n"; park the template's own CRs on a
    # sentinel so mixed line endings survive
    sentinel = _pick_sentinel(template_text, *values.values())
    protected = _protect_cr(template_text, sentinel)

    env = _erb_environment()
    try:
        template = env.from_string(protected)
        rendered = template.render(**values)
    except jinja2.TemplateSyntaxError as e:
        raise TemplateRenderError(f"{name}:{e.lineno}: {e.message}") from e
    except jinja2.UndefinedError as e:
        raise TemplateRenderError(f"{name}: {e.message}") from e
    return rendered.replace(sentinel, "\r")


def _pick_sentinel(*texts: str) -> str:
    for codepoint in range(0xE000, 0xF900):
        candidate = chr(codepoint)
        if not any(candidate in text for text in texts):
            return candidate
    raise TemplateRenderError("no free private-use character for newline protection")


def _protect_cr(template_text: str, sentinel: str) -> str:
    """Swap CRs for *sentinel* in literal text only; tags keep theirs."""
    out = []
    pos = 0
    for m in TAG_RE.finditer(template_text):
        out.append(template_text[pos:m.start()].replace("\r", sentinel))
        out.append(m.group(0))
        pos = m.end()
    out.append(template_text[pos:].replace("\r", sentinel))
    return "".join(out)


# ── Build ────────────────────────────────────────────────
def read_source(config: BuildConfig, relpath: str) -> str:
    source = config.resolve(relpath)
    if not source.is_file():
        raise BuildError(f"source file not found: {relpath}")
    try:
        # bytes -> str keeps CRLF and friends exactly as on disk
        return source.read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise BuildError(f"cannot read {relpath}: {e}") from e


def load_fragments(config: BuildConfig) -> dict[str, str]:
    """Read every configured fragment, keeping the configured order."""
    values = {}
    for name, relpath in config.fragments.items():
        values[name] = read_source(config, relpath)
        log.info("Loaded %s from %s (%d bytes)", name, relpath, len(values[name]))
    return values


def build(config: BuildConfig) -> str:
    values = load_fragments(config)
    template_text = read_source(config, config.template)
    return render(template_text, values, name=config.template)


def _target_mode(path: Path) -> int:
    """Mode of the existing *path*, or what a plain open() would create."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def write_output(path: Path, text: str):
    """Write *text* to *path* with puts semantics, replacing it atomically.

    The previous file (if any) is only replaced once the new content is fully
    on disk; on failure the temporary file is removed. The result keeps the
    previous file's mode, or the umask default for a new file.
    """
    if not text.endswith("\n"):
        text += "\n"
    directory = path.parent
    if not directory.is_dir():
        raise BuildError(f"output directory does not exist: {directory}")

    tmp_name = None
    try:
        mode = _target_mode(path)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", newline="", dir=directory,
            prefix=f".{path.name}.", suffix=".tmp", delete=False,
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(text)
        # mkstemp creates 0600
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise BuildError(f"cannot write {path}: {e}") from e


def main():
    setup_logging()
    config = BuildConfig(root=Path.cwd())

    try:
        cf_template = build(config)
        write_output(config.resolve(config.output), cf_template)
    except BuildError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    log.info("Wrote %s (%d bytes)", config.output, len(cf_template))
    print(config.output)


if __name__ == "__main__":
    main()
