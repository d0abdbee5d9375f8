from __future__ import annotations

from dataclasses import dataclass

from comms_sync.domain.value_objects.enums import Severity, ToastVariant


@dataclass(frozen=True, slots=True)
class Toast:
    title: str
    description: str
    variant: ToastVariant = ToastVariant.DEFAULT
    severity: Severity | None = None
    link: str | None = None
    duration_ms: int = 5000
