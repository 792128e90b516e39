from importlib import import_module

__all__ = [
    "sync_orchestrator",
    "SyncOrchestrator",
    "run_registry",
    "RunRegistry",
    "holder_discovery",
    "HolderDiscoveryService",
    "position_ledger",
    "PositionLedger",
    "SwapFeedClient",
]

_LAZY_EXPORTS = {
    "sync_orchestrator": ("services.sync_orchestrator", "sync_orchestrator"),
    "SyncOrchestrator": ("services.sync_orchestrator", "SyncOrchestrator"),
    "run_registry": ("services.sync_status", "run_registry"),
    "RunRegistry": ("services.sync_status", "RunRegistry"),
    "holder_discovery": ("services.holder_discovery", "holder_discovery"),
    "HolderDiscoveryService": ("services.holder_discovery", "HolderDiscoveryService"),
    "position_ledger": ("services.position_ledger", "position_ledger"),
    "PositionLedger": ("services.position_ledger", "PositionLedger"),
    "SwapFeedClient": ("services.swap_feed", "SwapFeedClient"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
