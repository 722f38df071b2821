"""
Sandbox lifecycle services.
"""

from .errors import (
    SandboxError,
    ConfigurationError,
    ProvisioningError,
    RestorationError,
    DevServerError,
    DeploymentError,
    DeploymentFailureKind,
    TransportFailure,
    FragmentNotFoundError,
    ProviderError,
    SandboxNotFoundError,
    TransientProviderError,
)
from .provider import SandboxProvider, SandboxSpec, ModalSandboxProvider
from .database import ProjectStore, DatabaseService
from .cache import CacheService
from .image_selector import ImageSelector, ImageSelection, choose_image
from .file_restorer import FileRestorer, decode_file_content, encode_binary_content
from .config_patcher import ConfigPatcher, patch_vite_config, patch_base44_client
from .dev_server import DevServerController
from .sandbox_manager import SandboxProvisioner, ProvisionOptions
from .snapshots import SnapshotManager, CleanupResult
from .deployment import DeploymentPipeline, DeploymentResult, filter_sensitive_logs, force_https
from .health import SandboxHealthChecker, HealthReport, HealthReason
from .recovery import (
    HealthRecoveryLoop,
    SandboxStateMachine,
    SandboxState,
    SandboxStatus,
    Action,
    ActionType,
    find_recovery_snapshot,
    ui_status,
)
from .fragments import FragmentService
from .background import spawn_background
from .runtime import SandboxServices, init_services, get_services, close_services

__all__ = [
    # Errors
    "SandboxError",
    "ConfigurationError",
    "ProvisioningError",
    "RestorationError",
    "DevServerError",
    "DeploymentError",
    "DeploymentFailureKind",
    "TransportFailure",
    "FragmentNotFoundError",
    "ProviderError",
    "SandboxNotFoundError",
    "TransientProviderError",
    # Provider and storage
    "SandboxProvider",
    "SandboxSpec",
    "ModalSandboxProvider",
    "ProjectStore",
    "DatabaseService",
    "CacheService",
    # Lifecycle components
    "ImageSelector",
    "ImageSelection",
    "choose_image",
    "FileRestorer",
    "decode_file_content",
    "encode_binary_content",
    "ConfigPatcher",
    "patch_vite_config",
    "patch_base44_client",
    "DevServerController",
    "SandboxProvisioner",
    "ProvisionOptions",
    "SnapshotManager",
    "CleanupResult",
    "DeploymentPipeline",
    "DeploymentResult",
    "filter_sensitive_logs",
    "force_https",
    "SandboxHealthChecker",
    "HealthReport",
    "HealthReason",
    "HealthRecoveryLoop",
    "SandboxStateMachine",
    "SandboxState",
    "SandboxStatus",
    "Action",
    "ActionType",
    "find_recovery_snapshot",
    "ui_status",
    "FragmentService",
    "spawn_background",
    # Wiring
    "SandboxServices",
    "init_services",
    "get_services",
    "close_services",
]
