"""
Pipeline configuration — which optional stages a run composes.

One parameterized pipeline replaces the four near-identical boot scripts.
The presets reproduce those scripts; the explicit fields allow any other
combination (image kind and entropy device are independent axes).
"""
from __future__ import annotations

from enum import Enum, unique
from typing import Optional

from pydantic import BaseModel, Field, model_validator


@unique
class ImageKind(str, Enum):
    NONE = "none"
    FILESYSTEM = "filesystem"
    RAW = "raw"


@unique
class ConsoleMode(str, Enum):
    INTERACTIVE = "interactive"  # serial console bound to this terminal
    CAPTURE = "capture"          # console piped, logged and saved


@unique
class Variant(str, Enum):
    KERNEL = "kernel"
    KERNEL_PROGRAM = "kernel-program"
    KERNEL_FS = "kernel-fs"
    KERNEL_RAW = "kernel-raw"


class PipelineConfig(BaseModel):
    """Recognized options for one harness run."""

    with_embedded_program: bool = False
    image_kind: ImageKind = ImageKind.NONE
    # None means "the natural size": the settings default for filesystem
    # images, the fixture length for raw images.
    image_capacity: Optional[int] = Field(default=None, gt=0)
    attach_entropy: bool = False
    console_mode: ConsoleMode = ConsoleMode.INTERACTIVE
    # Only honoured in capture mode; interactive sessions run until the guest halts.
    boot_timeout: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _capacity_needs_image(self) -> "PipelineConfig":
        if self.image_kind == ImageKind.NONE and self.image_capacity is not None:
            raise ValueError("image_capacity given but image_kind is 'none'")
        return self

    @property
    def has_image(self) -> bool:
        return self.image_kind != ImageKind.NONE

    # ── Presets ──────────────────────────────────────────────────────

    @classmethod
    def kernel_only(cls) -> "PipelineConfig":
        return cls()

    @classmethod
    def with_program(cls) -> "PipelineConfig":
        return cls(with_embedded_program=True)

    @classmethod
    def with_filesystem_image(cls) -> "PipelineConfig":
        return cls(
            image_kind=ImageKind.FILESYSTEM,
            image_capacity=1024 * 1024,
            attach_entropy=True,
        )

    @classmethod
    def with_raw_image(cls) -> "PipelineConfig":
        return cls(image_kind=ImageKind.RAW)

    @classmethod
    def for_variant(cls, variant: Variant) -> "PipelineConfig":
        return {
            Variant.KERNEL: cls.kernel_only,
            Variant.KERNEL_PROGRAM: cls.with_program,
            Variant.KERNEL_FS: cls.with_filesystem_image,
            Variant.KERNEL_RAW: cls.with_raw_image,
        }[variant]()
