"""設定モジュール。"""

from .settings import ModelDefaults, PermissionConfig, PermissionMode, Settings
from .template_loader import TemplateLoader, get_template_loader, interpolate

__all__ = [
    "ModelDefaults",
    "PermissionConfig",
    "PermissionMode",
    "Settings",
    "TemplateLoader",
    "get_template_loader",
    "interpolate",
]
