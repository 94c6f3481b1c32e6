from lumo.migrations.runner import current_revision, upgrade_to_head

__all__ = ["upgrade_to_head", "current_revision"]
