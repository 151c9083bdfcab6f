"""
hub.py — Pull GGUF files from HuggingFace Hub and browse GGUF repos

Downloads the configured quantization (Q4_K_M by default) of a repo into
<models_dir>/<author>/<name>/ and registers it in the catalog.

Usage:
    record = pull("bartowski/Qwen2.5-Math-1.5B-Instruct-GGUF", settings, catalog)
    print(recent_models().to_string(index=False))
    print(trending_models().to_string(index=False))

Quant size guide (for 7B models):
    Q2_K   ~ 2.7 GB  — smallest, quality loss
    Q4_K_M ~ 4.4 GB  — recommended balance
    Q5_K_M ~ 5.1 GB  — better quality
    Q8_0   ~ 7.7 GB  — near lossless
"""

from __future__ import annotations
import logging
from pathlib import Path
from typing import Optional

import pandas as pd
from huggingface_hub import HfApi, snapshot_download
from huggingface_hub.errors import HfHubHTTPError

from .catalog import Catalog, ModelRecord, derive_slug, validate_model_id
from .config import Settings, human_size
from .errors import GGUFError, NotFound

logger = logging.getLogger(__name__)

LISTING_COLUMNS = ["MODEL ID", "LAST MODIFIED", "LIKES", "DOWNLOADS"]


def pull(
    model_id: str,
    settings: Settings,
    catalog: Catalog,
    slug: Optional[str] = None,
    token: Optional[str] = None,
) -> Optional[ModelRecord]:
    """
    Download the *settings.quant* GGUF of *model_id* and catalog it.

    Returns the new record, or None when the model directory already holds
    a .gguf file (nothing is downloaded in that case).
    """
    validate_model_id(model_id)

    model_dir = Path(settings.models_dir).expanduser().resolve() / model_id
    logger.info("Checking for existing files in %s...", model_dir)
    if model_dir.is_dir() and any(model_dir.rglob("*.gguf")):
        logger.warning("Model already exists in %s. Remove existing files to re-download.", model_dir)
        return None

    pattern = f"*{settings.quant}.gguf"
    logger.info("Downloading %s file for model %s...", pattern, model_id)
    model_dir.mkdir(parents=True, exist_ok=True)
    try:
        snapshot_download(
            repo_id=model_id,
            allow_patterns=[pattern],
            local_dir=str(model_dir),
            token=token,
        )
    except HfHubHTTPError as exc:
        raise GGUFError(f"Download of {model_id} failed: {exc}") from exc

    downloaded = sorted(model_dir.rglob(pattern))
    if not downloaded:
        raise NotFound(f"No {settings.quant}.gguf file found after download attempt.")

    path = downloaded[0]
    slug = slug or derive_slug(model_id)
    record = catalog.upsert(slug, model_id, path.name, path, human_size(path.stat().st_size))
    logger.info("Model added to database with slug: %s", slug)
    return record


# ---------------------------------------------------------------------------
# Browsing
# ---------------------------------------------------------------------------

def _gguf_models(limit: int) -> pd.DataFrame:
    api = HfApi()
    rows = []
    try:
        for m in api.list_models(filter="gguf", sort="lastModified", limit=limit):
            if "gguf" not in (m.tags or ["gguf"]):
                continue
            rows.append({
                "MODEL ID":      m.id,
                "LAST MODIFIED": m.last_modified.isoformat() if m.last_modified else "",
                "LIKES":         m.likes or 0,
                "DOWNLOADS":     m.downloads or 0,
            })
    except (HfHubHTTPError, OSError) as exc:
        raise GGUFError(f"Could not list models from Hugging Face: {exc}") from exc
    return pd.DataFrame(rows, columns=LISTING_COLUMNS)


def recent_models(limit: int = 20) -> pd.DataFrame:
    """The *limit* most recently modified GGUF repos."""
    return _gguf_models(limit).head(limit)


def trending_models(limit: int = 20, pool: int = 100) -> pd.DataFrame:
    """
    Top *limit* of the *pool* most recently modified GGUF repos, ranked by
    likes with downloads as the tie-breaker.
    """
    df = _gguf_models(pool)
    df = df.sort_values(["LIKES", "DOWNLOADS"], ascending=False, kind="stable")
    return df.head(limit).reset_index(drop=True)
