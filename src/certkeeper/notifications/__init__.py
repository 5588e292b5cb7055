"""Email templates for deployment notifications."""

from certkeeper.notifications.renderer import TemplateRenderer

__all__ = ["TemplateRenderer"]
