"""Call flows bundled with the gateway."""

from ..flow import MachineRegistry
from .main_menu import main_menu
from .voicemail import voicemail


def build_registry() -> MachineRegistry:
    """Returns a registry holding every bundled flow."""
    return MachineRegistry([main_menu, voicemail])


__all__ = ["build_registry", "main_menu", "voicemail"]
