"""Ledger module."""
from streamslicer.config import Settings
from streamslicer.errors import ConfigurationError
from .base import LedgerBackend
from .memory import MemoryLedgerBackend
from .service import BalanceLedger, UsageLog
from .supabase import SupabaseLedgerBackend
from .turso import TursoLedgerBackend


def create_ledger_backend(settings: Settings) -> LedgerBackend:
    """Factory function to create the configured ledger backend."""
    if settings.ledger_backend == "memory":
        return MemoryLedgerBackend(secret_key=settings.secret_key)
    elif settings.ledger_backend == "turso":
        if not settings.turso_db_url:
            raise ConfigurationError("TURSO_DB_URL is required for the turso ledger")
        return TursoLedgerBackend(
            settings.turso_db_url,
            settings.turso_auth_token,
            secret_key=settings.secret_key,
        )
    elif settings.ledger_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_service_key:
            raise ConfigurationError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY are required for the supabase ledger"
            )
        return SupabaseLedgerBackend(
            settings.supabase_url,
            settings.supabase_service_key,
            anon_key=settings.supabase_anon_key,
            secret_key=settings.secret_key,
        )
    else:
        raise ValueError(f"Unknown ledger backend: {settings.ledger_backend}")


__all__ = [
    "LedgerBackend", "MemoryLedgerBackend", "TursoLedgerBackend", "SupabaseLedgerBackend",
    "BalanceLedger", "UsageLog", "create_ledger_backend",
]
