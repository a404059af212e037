"""
Media Unification Migration Module
==================================

Merges the legacy ``images`` and ``docs`` tables into one ``media`` table and
the matching upload directories into ``uploads/media``, reversibly.

Components:
    - BackupManager: Creates, lists, restores and deletes store backups
    - SchemaMigrator: Moves legacy rows into the unified table (steps 1-4)
    - FileRelocator: Copies legacy files into the unified directory
    - MigrationVerifier: Validates counts and sampled checksums
    - MigrationOrchestrator: Staged workflow with automatic rollback
"""

from .backup import BackupManager
from .schema import MigrationStep, SchemaMigrationResult, SchemaMigrator
from .files import FileRelocator, RelocationLog, RelocationStatus
from .verify import MigrationVerifier, VerificationReport, VerificationResult
from .orchestrator import (
    MigrationOrchestrator,
    OrchestrationResult,
    RollbackResult,
    Stage,
)

__all__ = [
    'BackupManager',
    'MigrationStep',
    'SchemaMigrationResult',
    'SchemaMigrator',
    'FileRelocator',
    'RelocationLog',
    'RelocationStatus',
    'MigrationVerifier',
    'VerificationReport',
    'VerificationResult',
    'MigrationOrchestrator',
    'OrchestrationResult',
    'RollbackResult',
    'Stage',
]
