"""
cli.py — `gguf` command line

    gguf pull bartowski/Qwen2.5-Math-1.5B-Instruct-GGUF
    gguf ls
    gguf alias qwen2-5-math-1-5b-instruct-gguf qwen-math
    gguf run qwen-math "The derivative of x^2 is"
    gguf chat qwen-math
    gguf kill all

Every subcommand accepts --help. Exit status is 0 on success and 1 on any
handled failure. Settings come from the environment (see config.py).
"""

from __future__ import annotations
import argparse
import json
import logging
import shutil
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

import pandas as pd

from .catalog import Catalog
from .config import Settings
from .errors import GGUFError, InvalidInput, NotFound, NotRunning
from .hub import pull, recent_models, trending_models
from .lifecycle import ServerManager
from .server_api import LlamaServerAPI, chat_text, completion_text, pretty, trim_blank_lines

logger = logging.getLogger("ggufherd")

USAGE = """\
Usage: gguf <command> [options]

Model Management:
  pull <model_id>              Download a new model
  rm <slug>                    Remove a model
  ls                           List all models
  alias <old> <new>            Create an alias for a model
  import                       Import existing models
  reset                        Reset the database

Model Operations:
  run <slug> [text]            Run a model server and optionally complete text
  chat <slug>                  Start a chat session
  embed <slug> <text>          Generate embeddings
  tokenize <slug> <text>       Tokenize text
  detokenize <slug> <tokens>   Detokenize tokens

Server Information:
  health                       Check server health
  props                        Get server properties
  ps                           Show running processes
  kill <slug|all>              Kill a model server
  recent                       Get most recent GGUF models
  trending                     Get trending GGUF models

For more information, use: gguf <command> --help"""

COMMANDS = (
    "pull", "rm", "ls", "alias", "import", "reset",
    "run", "chat", "embed", "tokenize", "detokenize",
    "health", "props", "ps", "kill", "recent", "trending",
)

# Commands whose NotFound means "slug not in catalog"
_SLUG_COMMANDS = {"rm", "alias", "run", "chat", "embed", "tokenize", "detokenize"}


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

class TagFormatter(logging.Formatter):
    """Renders records as `[INFO] message` with the tag colored on a tty."""

    TAGS = {
        logging.DEBUG:   ("DEBUG", "\033[0;90m"),
        logging.INFO:    ("INFO",  "\033[0;32m"),
        logging.WARNING: ("WARN",  "\033[0;33m"),
        logging.ERROR:   ("ERROR", "\033[0;31m"),
    }

    def __init__(self, color: bool = False):
        super().__init__("%(message)s")
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        tag, color = self.TAGS.get(record.levelno, ("ERROR", "\033[0;31m"))
        msg = super().format(record)
        if self.color:
            return f"{color}[{tag}]\033[0m {msg}"
        return f"[{tag}] {msg}"


def setup_logging(verbose: bool = False, stream=None):
    stream = stream or sys.stderr
    handler = logging.StreamHandler(stream)
    handler.setFormatter(TagFormatter(color=hasattr(stream, "isatty") and stream.isatty()))
    root = logging.getLogger("ggufherd")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class App:
    """Wires settings, catalog, server manager and API client for one invocation."""

    def __init__(self, settings: Settings, catalog: Optional[Catalog] = None,
                 manager: Optional[ServerManager] = None,
                 api: Optional[LlamaServerAPI] = None):
        self.settings = settings
        self.catalog = catalog or Catalog(settings.db_path)
        self.manager = manager or ServerManager(self.catalog, settings)
        self.api = api or LlamaServerAPI(settings.base_url, timeout=settings.request_timeout)

    # -- model management ---------------------------------------------------

    def cmd_pull(self, args) -> int:
        s = self.settings
        if args.quant:
            s = replace(s, quant=args.quant)
        record = pull(args.model_id, s, self.catalog, slug=args.slug)
        if record is not None:
            print(f"To use this model, run: gguf chat {record.slug}")
        return 0

    def cmd_rm(self, args) -> int:
        path = Path(self.catalog.resolve(args.slug))
        path.unlink(missing_ok=True)
        self.catalog.remove(args.slug)
        logger.info("Model '%s' removed from filesystem and database.", args.slug)
        return 0

    def cmd_ls(self, args) -> int:
        print(self.catalog.to_frame().to_string(index=False))
        return 0

    def cmd_alias(self, args) -> int:
        self.catalog.rename(args.old_slug, args.new_slug)
        logger.info("Model '%s' aliased to '%s'.", args.old_slug, args.new_slug)
        return 0

    def cmd_import(self, args) -> int:
        self.catalog.import_from_directory(self.settings.models_dir)
        return 0

    def cmd_reset(self, args) -> int:
        self.catalog.reset()
        self.catalog.import_from_directory(self.settings.models_dir)
        logger.info("Database reset and import complete.")
        return 0

    # -- model operations ---------------------------------------------------

    def _report_failure(self, what: str, outcome) -> int:
        logger.error("Failed to %s. Status code: %s", what, outcome.status_code)
        print(outcome.body)
        return 1

    def cmd_run(self, args) -> int:
        self.manager.ensure_running(args.slug)
        if not args.text:
            return 0
        prompt = " ".join(args.text)
        logger.info("Completing text: %s", prompt)
        print("─" * shutil.get_terminal_size().columns)
        s = self.settings
        out = self.api.completion(prompt, n_predict=s.n_predict, temperature=s.temperature,
                                  top_k=s.top_k, top_p=s.top_p)
        if not out.ok:
            return self._report_failure("complete text", out)
        print(trim_blank_lines(completion_text(out)))
        return 0

    def cmd_chat(self, args) -> int:
        self.manager.ensure_running(args.slug)
        logger.info("Starting chat session. Type 'exit' to end.")
        messages: list[dict] = []
        status = 0
        while True:
            try:
                user_input = input("User: ")
            except EOFError:
                break
            if user_input.strip() == "exit":
                break
            messages.append({"role": "user", "content": user_input})
            out = self.api.chat(messages, temperature=self.settings.temperature,
                                max_tokens=self.settings.chat_max_tokens)
            if not out.ok:
                status = self._report_failure("get chat response", out)
                break
            reply = chat_text(out)
            print(f"Assistant: {reply}")
            messages.append({"role": "assistant", "content": reply})
        logger.info("Chat session ended.")
        return status

    def _operation(self, slug: str, what: str, call) -> int:
        self.manager.ensure_running(slug)
        time.sleep(self.settings.settle_delay)
        out = call()
        if not out.ok:
            return self._report_failure(f"perform {what}", out)
        print(trim_blank_lines(pretty(out)))
        return 0

    def cmd_embed(self, args) -> int:
        return self._operation(args.slug, "embedding", lambda: self.api.embedding(args.text))

    def cmd_tokenize(self, args) -> int:
        return self._operation(args.slug, "tokenize", lambda: self.api.tokenize(args.text))

    def cmd_detokenize(self, args) -> int:
        try:
            tokens = json.loads(args.tokens)
        except ValueError as exc:
            raise InvalidInput(f"Tokens must be a JSON array, got {args.tokens!r}") from exc
        if not isinstance(tokens, list):
            raise InvalidInput(f"Tokens must be a JSON array, got {args.tokens!r}")
        return self._operation(args.slug, "detokenize", lambda: self.api.detokenize(tokens))

    # -- server information -------------------------------------------------

    def cmd_health(self, args) -> int:
        out = self.api.health()
        if not out.ok:
            logger.error("Server not healthy (Status code: %s)", out.status_code)
            print(out.body)
            return 1
        logger.info("Server is healthy.")
        print(pretty(out))
        return 0

    def cmd_props(self, args) -> int:
        out = self.api.props()
        if not out.ok:
            return self._report_failure("get server properties", out)
        print(pretty(out))
        return 0

    def cmd_ps(self, args) -> int:
        rows = [
            {"PID": proc.pid, "SLUG": slug, "MODEL": Path(proc.model_file).stem or "Unknown"}
            for proc, slug in self.manager.running()
        ]
        print(pd.DataFrame(rows, columns=["PID", "SLUG", "MODEL"]).to_string(index=False))
        return 0

    def cmd_kill(self, args) -> int:
        if args.target == "all":
            self.manager.kill_all()
            return 0
        reports = self.manager.kill(args.target)
        return 0 if all(r.ok for r in reports) else 1

    def cmd_recent(self, args) -> int:
        print(recent_models(args.limit).to_string(index=False))
        return 0

    def cmd_trending(self, args) -> int:
        print(trending_models(args.limit).to_string(index=False))
        return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class ArgumentParser(argparse.ArgumentParser):
    """Reports bad arguments as InvalidInput so they exit 1 like other failures."""

    def error(self, message):
        self.print_usage(sys.stderr)
        raise InvalidInput(f"{self.prog}: {message}")


def build_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(prog="gguf", usage=USAGE, add_help=False)
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd", prog="gguf")

    p = sub.add_parser("pull", help="Download a new model from Hugging Face")
    p.add_argument("model_id", help="The Hugging Face model ID (e.g. 'author/model-name')")
    p.add_argument("--slug",  default=None, help="Slug to register (default: derived from model_id)")
    p.add_argument("--quant", default=None, help="Quantization suffix to download (default: Q4_K_M)")

    p = sub.add_parser("rm", help="Remove a model from the filesystem and database")
    p.add_argument("slug")

    sub.add_parser("ls", help="List all models in the database")

    p = sub.add_parser("alias", help="Create an alias for a model")
    p.add_argument("old_slug", help="The current slug of the model")
    p.add_argument("new_slug", help="The new slug to assign to the model")

    sub.add_parser("import", help="Import existing .gguf files from the models directory")
    sub.add_parser("reset", help="Reset the database and re-import existing models")

    p = sub.add_parser("run", help="Run a model server and optionally complete text")
    p.add_argument("slug")
    p.add_argument("text", nargs="*", help="Optional text for completion")

    p = sub.add_parser("chat", help="Start an interactive chat session")
    p.add_argument("slug")

    p = sub.add_parser("embed", help="Generate embeddings for the given text")
    p.add_argument("slug")
    p.add_argument("text")

    p = sub.add_parser("tokenize", help="Tokenize the given text")
    p.add_argument("slug")
    p.add_argument("text")

    p = sub.add_parser("detokenize", help="Detokenize the given tokens")
    p.add_argument("slug")
    p.add_argument("tokens", help="The tokens to detokenize, as a JSON array")

    sub.add_parser("health", help="Check the health status of the running server")
    sub.add_parser("props", help="Get the properties of the running server")
    sub.add_parser("ps", help="Show running llama-server processes")

    p = sub.add_parser("kill", help="Kill the server for a model, or 'all' servers")
    p.add_argument("target", metavar="slug|all")

    p = sub.add_parser("recent", help="Most recently modified GGUF models on Hugging Face")
    p.add_argument("--limit", type=int, default=20)

    p = sub.add_parser("trending", help="Top GGUF models on Hugging Face by likes and downloads")
    p.add_argument("--limit", type=int, default=20)

    return parser


def _command_name(argv: list[str]) -> Optional[str]:
    for arg in argv:
        if not arg.startswith("-"):
            return arg
    return None


def main(argv: Optional[list[str]] = None, app: Optional[App] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    if _command_name(argv) not in COMMANDS:
        print(USAGE)
        return 0

    try:
        args = parser.parse_args(argv)
    except InvalidInput as exc:
        setup_logging()
        logger.error("%s", exc)
        return 1
    setup_logging(verbose=args.verbose)
    app = app or App(Settings.from_env())

    try:
        return getattr(app, f"cmd_{args.cmd}")(args)
    except NotRunning as exc:
        logger.warning("%s", exc)
        logger.info("Use 'gguf ps' to see running models.")
        return 1
    except NotFound as exc:
        logger.error("%s", exc)
        if args.cmd in _SLUG_COMMANDS:
            print(app.catalog.to_frame().to_string(index=False), file=sys.stderr)
        return 1
    except GGUFError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
