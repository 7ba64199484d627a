"""
Hemisphere enum and a two-field record holding one value per hemisphere.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class Hemisphere(Enum):
    LEFT = "L"
    RIGHT = "R"

    @property
    def short(self) -> str:
        """Lower-case letter used in file templates ('l' or 'r')."""
        return self.value.lower()

    @property
    def label(self) -> str:
        """MNE-style hemisphere suffix ('lh' or 'rh')."""
        return f"{self.short}h"

    @classmethod
    def from_label(cls, label: str) -> "Hemisphere":
        label = label.strip().lower()
        if label in ("l", "lh", "left"):
            return cls.LEFT
        if label in ("r", "rh", "right"):
            return cls.RIGHT
        raise ValueError(f"Unknown hemisphere: {label!r}")


HEMISPHERES = (Hemisphere.LEFT, Hemisphere.RIGHT)


@dataclass
class PerHemisphere(Generic[T]):
    """One value for the left and one for the right hemisphere."""

    left: T
    right: T

    def __getitem__(self, hemi: Hemisphere) -> T:
        if hemi is Hemisphere.LEFT:
            return self.left
        if hemi is Hemisphere.RIGHT:
            return self.right
        raise KeyError(hemi)

    def __setitem__(self, hemi: Hemisphere, value: T) -> None:
        if hemi is Hemisphere.LEFT:
            self.left = value
        elif hemi is Hemisphere.RIGHT:
            self.right = value
        else:
            raise KeyError(hemi)

    def items(self):
        return [(Hemisphere.LEFT, self.left), (Hemisphere.RIGHT, self.right)]
