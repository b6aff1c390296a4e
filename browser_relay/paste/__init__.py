"""Automatic paste of screenshots into desktop applications."""

from .injector import (
    KNOWN_TARGETS,
    LinuxPasteInjector,
    MacOSPasteInjector,
    PasteInjector,
    PasteOutcome,
    PasteTarget,
    UnsupportedPasteInjector,
    WindowsPasteInjector,
    resolve_target,
    select_injector,
)

__all__ = [
    'KNOWN_TARGETS',
    'LinuxPasteInjector',
    'MacOSPasteInjector',
    'PasteInjector',
    'PasteOutcome',
    'PasteTarget',
    'UnsupportedPasteInjector',
    'WindowsPasteInjector',
    'resolve_target',
    'select_injector',
]
