"""Hydra ↔ Pydantic adapter.

Bridges the composed Hydra ``DictConfig`` used by the process entry points
(``cityindex.main`` and ``scripts/run_worker.py``) and the ``AppSettings``
model the rest of the code reads.

Usage:
    from hydra import compose, initialize
    from cityindex.config.hydra_adapter import hydra_to_pydantic

    with initialize(config_path="../../../configs"):
        cfg = compose(config_name="config", overrides=["storage.mongo.enabled=true"])
        settings = hydra_to_pydantic(cfg)
"""

from typing import Any, Dict

from omegaconf import DictConfig, OmegaConf

from .settings import Settings

_SECTIONS = ("storage", "ids", "jobs", "telemetry", "api")


def hydra_to_pydantic(hydra_config: DictConfig) -> Settings:
    """Convert a Hydra config into validated settings.

    Unknown top-level keys (``hydra``, ``defaults``) are dropped; interpolations
    are resolved before validation.
    """
    config_dict = OmegaConf.to_container(hydra_config, resolve=True, throw_on_missing=True)
    return Settings(**_build_pydantic_dict(config_dict))


def pydantic_to_hydra(settings: Settings) -> DictConfig:
    return OmegaConf.create(settings.model_dump())


def _build_pydantic_dict(hydra_dict: Dict[str, Any]) -> Dict[str, Any]:
    pydantic_dict: Dict[str, Any] = {}
    if "environment" in hydra_dict:
        pydantic_dict["environment"] = hydra_dict["environment"]
    for section in _SECTIONS:
        value = hydra_dict.get(section)
        if isinstance(value, dict):
            pydantic_dict[section] = value
    return pydantic_dict


__all__ = ["hydra_to_pydantic", "pydantic_to_hydra"]
