from keyrotor.services.encryption.config_apply import ConfigApplyController
from keyrotor.services.encryption.config_computer import compute, compute_transition
from keyrotor.services.encryption.controller import EncryptionController, SyncResult
from keyrotor.services.encryption.convergence import ConvergenceReport, ReplicaConvergenceView
from keyrotor.services.encryption.key_mint import KeyMintController
from keyrotor.services.encryption.migration import MigrationController
from keyrotor.services.encryption.migrator import MigrationCollaborator, MigrationResult, StoredObjectMigrator
from keyrotor.services.encryption.policy import DEFAULT_ENCRYPTED_RESOURCES, default_resource_policy
from keyrotor.services.encryption.prune import PruneController
from keyrotor.services.encryption.storage import EncryptedObjectStore, load_encryption_config

__all__ = [
    "ConfigApplyController",
    "ConvergenceReport",
    "DEFAULT_ENCRYPTED_RESOURCES",
    "EncryptedObjectStore",
    "EncryptionController",
    "KeyMintController",
    "MigrationCollaborator",
    "MigrationController",
    "MigrationResult",
    "PruneController",
    "ReplicaConvergenceView",
    "StoredObjectMigrator",
    "SyncResult",
    "compute",
    "compute_transition",
    "default_resource_policy",
    "load_encryption_config",
]
