"""API orchestrators for the automation engine."""

from .controllers import EngineController, build_controller

__all__ = ["EngineController", "build_controller"]
