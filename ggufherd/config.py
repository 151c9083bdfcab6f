"""
config.py — Runtime settings for ggufherd

Every component receives a Settings instance at construction; nothing
reads module globals at call time. Defaults come from environment
variables so a shell profile can override any of them:

    GGUF_HOME             base dir for models, catalog and state (~/.cache/gguf)
    GGUF_MODELS_DIR       where downloaded .gguf files live
    GGUF_DB_PATH          SQLite catalog file
    GGUF_STATE_FILE       JSON file recording the active server slot
    GGUF_LOG_DIR          per-slug server logs (default: system temp dir)
    LLAMA_SERVER          llama-server executable (default: found on PATH)
    GGUF_HOST / GGUF_PORT address the server listens on (localhost:1979)
    GGUF_QUANT            quantization suffix pulled from the Hub (Q4_K_M)
    GGUF_STARTUP_TIMEOUT  seconds to wait for the server port (300)

Usage:
    settings = Settings.from_env()
    settings = Settings.from_env(port=8080)    # explicit overrides win
"""

from __future__ import annotations
import math
import os
import shutil
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

GGUF_HOME = Path(os.environ.get("GGUF_HOME", Path.home() / ".cache" / "gguf"))

DEFAULT_PORT = 1979
DEFAULT_QUANT = "Q4_K_M"
STARTUP_TIMEOUT = 300

# Sampling defaults sent with /completion and /v1/chat/completions
TEMPERATURE = 0.7
TOP_K = 40
TOP_P = 0.5
N_PREDICT = 256
CHAT_MAX_TOKENS = 1024


def _find_binary(*names) -> Optional[Path]:
    """Search PATH for a binary by multiple possible names."""
    for name in names:
        found = shutil.which(name) or shutil.which(name + ".exe")
        if found:
            return Path(found)
    return None


def _default_server_bin() -> str:
    env = os.environ.get("LLAMA_SERVER")
    if env:
        return env
    found = _find_binary("llama-server")
    return str(found) if found else "llama-server"


@dataclass
class Settings:
    models_dir: Path = GGUF_HOME / "models"
    db_path: Path = GGUF_HOME / "gguf.db"
    state_file: Path = GGUF_HOME / "server.json"
    log_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    server_bin: str = "llama-server"
    host: str = "localhost"
    port: int = DEFAULT_PORT
    quant: str = DEFAULT_QUANT

    startup_timeout: float = STARTUP_TIMEOUT
    poll_interval: float = 1.0
    progress_every: int = 10        # polls between progress dots
    kill_grace: float = 2.0         # seconds between SIGTERM and SIGKILL in kill_all
    settle_delay: float = 2.0       # pause before embed/tokenize/detokenize requests
    request_timeout: Optional[float] = None

    temperature: float = TEMPERATURE
    top_k: int = TOP_K
    top_p: float = TOP_P
    n_predict: int = N_PREDICT
    chat_max_tokens: int = CHAT_MAX_TOKENS

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        env = os.environ
        home = Path(env.get("GGUF_HOME", GGUF_HOME))
        settings = cls(
            models_dir=Path(env.get("GGUF_MODELS_DIR", home / "models")),
            db_path=Path(env.get("GGUF_DB_PATH", home / "gguf.db")),
            state_file=Path(env.get("GGUF_STATE_FILE", home / "server.json")),
            log_dir=Path(env.get("GGUF_LOG_DIR", tempfile.gettempdir())),
            server_bin=_default_server_bin(),
            host=env.get("GGUF_HOST", "localhost"),
            port=int(env.get("GGUF_PORT", DEFAULT_PORT)),
            quant=env.get("GGUF_QUANT", DEFAULT_QUANT),
            startup_timeout=float(env.get("GGUF_STARTUP_TIMEOUT", STARTUP_TIMEOUT)),
        )
        return replace(settings, **overrides) if overrides else settings

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def log_file(self, slug: str) -> Path:
        return Path(self.log_dir) / f"llama_server_{slug}.log"


def human_size(num_bytes: int) -> str:
    """Format a byte count the way `du -h` does (1.2G, 12G, 512K)."""
    size = float(num_bytes)
    if size < 1024:
        return f"{int(size)}B"
    for unit in ("K", "M", "G", "T", "P"):
        size /= 1024
        if size < 1024 or unit == "P":
            break
    tenths = math.ceil(size * 10) / 10
    if tenths < 10:
        return f"{tenths:.1f}{unit}"
    return f"{math.ceil(size)}{unit}"
