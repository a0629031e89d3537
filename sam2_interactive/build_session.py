# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Session Builder and Factory Functions

Builds inference engines, embedding stores and interaction sessions from
Hydra configuration. The default configuration
(configs/interactive_session.yaml) describes:

- engine: the ONNX Runtime engine and the paths of the exported encoder and
  decoder graphs
- store: a file-backed embedding cache rooted at $SAM2_INTERACTIVE_CACHE
  (default ".sam2-cache")
- session: model input size and mask display color

Any value can be replaced with Hydra override strings, e.g.
"engine.encoder_path=/models/encoder.onnx" or "store=null".

One engine can serve many sessions; build it once with
build_inference_engine() and pass it to build_interactive_session().
"""

import logging
from typing import List, Optional

from hydra import compose
from hydra.utils import instantiate
from omegaconf import DictConfig, OmegaConf

from sam2_interactive.embedding_store import EmbeddingStore
from sam2_interactive.interactive_session import InteractionSession
from sam2_interactive.modeling.engine import InferenceEngine
from sam2_interactive.utils.codec import TensorCodec

DEFAULT_CONFIG = "configs/interactive_session.yaml"


def _load_config(config_file: str, hydra_overrides_extra: List[str]) -> DictConfig:
    cfg = compose(config_name=config_file, overrides=list(hydra_overrides_extra))
    OmegaConf.resolve(cfg)
    return cfg


def _instantiate_engine(cfg: DictConfig, initialize: bool) -> InferenceEngine:
    engine = instantiate(cfg.engine, _recursive_=True)
    if initialize and hasattr(engine, "init"):
        engine.init()
    return engine


def _instantiate_store(cfg: DictConfig) -> Optional[EmbeddingStore]:
    if cfg.get("store") is None:
        logging.info("No embedding store configured, every session will encode its image")
        return None
    return instantiate(cfg.store, _recursive_=True)


def build_inference_engine(
    config_file=DEFAULT_CONFIG,
    hydra_overrides_extra=[],
    initialize=True,
):
    """
    Build the inference engine described by the configuration.

    Args:
        config_file (str): Config name relative to the sam2_interactive package.
        hydra_overrides_extra (list): Additional Hydra overrides.
        initialize (bool): Load the model graphs right away.

    Returns:
        InferenceEngine: The configured engine.
    """
    cfg = _load_config(config_file, hydra_overrides_extra)
    return _instantiate_engine(cfg, initialize)


def build_embedding_store(config_file=DEFAULT_CONFIG, hydra_overrides_extra=[]):
    cfg = _load_config(config_file, hydra_overrides_extra)
    return _instantiate_store(cfg)


def build_interactive_session(
    config_file=DEFAULT_CONFIG,
    hydra_overrides_extra=[],
    engine: Optional[InferenceEngine] = None,
    store: Optional[EmbeddingStore] = None,
) -> InteractionSession:
    """
    Build an InteractionSession for one image.

    Args:
        config_file (str): Config name relative to the sam2_interactive package.
        hydra_overrides_extra (list): Additional Hydra overrides.
        engine (InferenceEngine, optional): Shared engine. Built (and
            initialized) from the configuration when omitted.
        store (EmbeddingStore, optional): Shared embedding store. Built from
            the configuration when omitted.

    Returns:
        InteractionSession: A fresh, unprepared session.
    """
    cfg = _load_config(config_file, hydra_overrides_extra)
    if engine is None:
        engine = _instantiate_engine(cfg, initialize=True)
    if store is None:
        store = _instantiate_store(cfg)

    codec = TensorCodec(mask_color=list(cfg.session.mask_color))
    session = InteractionSession(
        engine,
        store=store,
        target_size=int(cfg.session.target_size),
        codec=codec,
    )
    logging.info(f"Built interactive session (target size {session.target_size})")
    return session
