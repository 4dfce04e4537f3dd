from __future__ import annotations

from fastapi import Depends

from channelprov.providers.meta.graph import MetaGraphClient
from channelprov.services.audit import ProvisioningStore
from channelprov.services.provisioning.workflow import ProvisioningWorkflow


_store: ProvisioningStore | None = None
_graph: MetaGraphClient | None = None


def get_store() -> ProvisioningStore:
    global _store
    if _store is None:
        _store = ProvisioningStore()
    return _store


def get_graph_client() -> MetaGraphClient:
    # One client per process so httpx pools connections across requests.
    global _graph
    if _graph is None:
        _graph = MetaGraphClient()
    return _graph


def get_workflow(
    store: ProvisioningStore = Depends(get_store),
    graph: MetaGraphClient = Depends(get_graph_client),
) -> ProvisioningWorkflow:
    return ProvisioningWorkflow(store, graph)


async def close_graph_client() -> None:
    global _graph
    if _graph is not None:
        await _graph.aclose()
        _graph = None
