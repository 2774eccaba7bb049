"""
pulse-llm :: Model Artifact Registry

Catalogue of the quantized model files the app knows how to run,
and the locator that finds the first one present on disk.

Search order is fixed: candidates in registration order, each tried in
every search directory before moving on to the next candidate.

To ship a new model:
    register_artifact("my-coach-q4", quantization="Q4_K_M", size="~800 MB")

INL - 2025
"""

import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from dataclasses import dataclass

from pulse_llm.core.errors import ModelNotFound
from pulse_llm.core.logging import get_logger

logger = get_logger("pulse_llm.registry")

MODEL_EXTENSION = ".gguf"


@dataclass
class ArtifactEntry:
    """A registered model artifact."""
    name: str             # base file name, no extension
    display_name: str     # e.g. "Llama 3.2 1B Instruct"
    quantization: str     # e.g. "Q4_K_M"
    size: str             # human-readable, e.g. "~750 MB"
    description: str


@dataclass
class ModelInfo:
    """What the UI shows about the on-device model."""
    name: str
    quantization: str
    size: str
    is_loaded: bool
    path: Optional[str] = None
    processing_mode: str = "100% On-Device"
    privacy_mode: str = "Data never leaves device"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "quantization": self.quantization,
            "size": self.size,
            "is_loaded": self.is_loaded,
            "path": self.path,
            "processing_mode": self.processing_mode,
            "privacy_mode": self.privacy_mode,
        }


# =========================================================================
# Global catalogue
# =========================================================================

_REGISTRY: Dict[str, ArtifactEntry] = {}


def register_artifact(
    name: str,
    display_name: str = "",
    quantization: str = "",
    size: str = "",
    description: str = "",
):
    """
    Register a model artifact.

    Args:
        name: base file name without extension (e.g. "llama3-health-coach")
        display_name: model name shown to the user
        quantization: weight format (e.g. "Q4_K_M")
        size: human-readable file size
        description: free text
    """
    _REGISTRY[name] = ArtifactEntry(
        name=name,
        display_name=display_name or name,
        quantization=quantization,
        size=size,
        description=description,
    )


def get_artifact_entry(name: str) -> ArtifactEntry:
    """Get a registered artifact entry."""
    if name not in _REGISTRY:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(f"Unknown artifact: {name}. Available: {available}")
    return _REGISTRY[name]


def list_artifacts() -> list:
    """List all registered artifacts, in search order."""
    return [
        {
            "name": e.name,
            "display_name": e.display_name,
            "quantization": e.quantization,
            "size": e.size,
            "description": e.description,
        }
        for e in _REGISTRY.values()
    ]


def candidate_paths(
    search_dirs: Sequence[str],
    candidates: Optional[Sequence[str]] = None,
    extension: str = MODEL_EXTENSION,
) -> List[Path]:
    """Every path locate_artifact() will try, in order."""
    names = list(candidates) if candidates is not None else list(_REGISTRY.keys())
    return [
        Path(os.path.expanduser(d)) / f"{name}{extension}"
        for name in names
        for d in search_dirs
    ]


def locate_artifact(
    search_dirs: Sequence[str],
    candidates: Optional[Sequence[str]] = None,
    extension: str = MODEL_EXTENSION,
) -> Path:
    """
    Find the first model file present on disk.

    Raises:
        ModelNotFound: no candidate exists in any search directory
    """
    tried = candidate_paths(search_dirs, candidates, extension)
    for path in tried:
        if path.is_file():
            logger.info(f"Found model: {path.name}", extra={"extra_data": {"path": str(path)}})
            return path

    logger.warning(f"No model file found ({len(tried)} candidates tried)")
    raise ModelNotFound(
        f"Model file not found. Add a {extension} file to one of: "
        + ", ".join(str(d) for d in search_dirs),
        detail={"tried": [str(p) for p in tried]},
    )


def model_info_for(path: Optional[Path], is_loaded: bool) -> ModelInfo:
    """Build ModelInfo from a located path (or the first catalogue entry if none)."""
    entry = None
    if path is not None:
        stem = path.name[: -len(path.suffix)] if path.suffix else path.name
        entry = _REGISTRY.get(stem)
    if entry is None and _REGISTRY:
        entry = next(iter(_REGISTRY.values()))
    if entry is None:
        return ModelInfo(name="unknown", quantization="", size="", is_loaded=is_loaded)
    return ModelInfo(
        name=entry.display_name,
        quantization=entry.quantization,
        size=entry.size,
        is_loaded=is_loaded,
        path=str(path) if path is not None else None,
    )


# =========================================================================
# Built-in registrations (search order matters)
# =========================================================================

register_artifact(
    name="llama3-health-coach",
    display_name="Llama 3.2 1B Instruct",
    quantization="Q4_K_M",
    size="~750 MB",
    description="Health-coach build of Llama 3.2 1B Instruct",
)

register_artifact(
    name="Llama-3.2-1B-Instruct-Q4_K_M",
    display_name="Llama 3.2 1B Instruct",
    quantization="Q4_K_M",
    size="~750 MB",
    description="Upstream Llama 3.2 1B Instruct, Q4_K_M GGUF",
)

register_artifact(
    name="llama-3.2-1b-instruct",
    display_name="Llama 3.2 1B Instruct",
    quantization="unknown",
    size="",
    description="Llama 3.2 1B Instruct, lower-case export name",
)

DEFAULT_CANDIDATES = tuple(_REGISTRY.keys())
