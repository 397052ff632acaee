"""Shared helpers for the service adapters."""

from __future__ import annotations

import uuid

from ..models import SplitRange


def new_batch_id() -> str:
    return uuid.uuid4().hex


def batch_prefix(batch_id: str) -> str:
    return f"batches/{batch_id}"


def generate_original_path(batch_id: str, suffix: str = "pdf") -> str:
    return f"{batch_prefix(batch_id)}/original.{suffix}"


def generate_split_path(batch_id: str, index: int, split: SplitRange, suffix: str = "pdf") -> str:
    return (
        f"{batch_prefix(batch_id)}/splits/"
        f"invoice-{index:02d}_p{split.start_page}-{split.end_page}.{suffix}"
    )
