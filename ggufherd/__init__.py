"""
ggufherd — local GGUF model catalog and llama-server lifecycle

Modules:
    config      — Settings (env-var defaults) and du-style size formatting
    catalog     — SQLite slug → model file catalog
    processes   — llama-server process table + port probe
    lifecycle   — start / wait / kill the server for a slug
    server_api  — llama-server HTTP wrapper with classified outcomes
    hub         — HuggingFace Hub pulls and GGUF repo listings
    cli         — the `gguf` command
"""

from .config import Settings
from .catalog import Catalog, ModelRecord, derive_slug, validate_model_id
from .lifecycle import ServerManager
from .server_api import LlamaServerAPI, RequestFailed, Succeeded
from .errors import Conflict, GGUFError, InvalidInput, NotFound, NotRunning, StartupTimeout

__all__ = [
    "Settings", "Catalog", "ModelRecord", "derive_slug", "validate_model_id",
    "ServerManager", "LlamaServerAPI", "RequestFailed", "Succeeded",
    "GGUFError", "NotFound", "NotRunning", "Conflict", "InvalidInput", "StartupTimeout",
]
