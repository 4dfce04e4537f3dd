from __future__ import annotations

import argparse
import asyncio
import json
import sys

from channelprov.core.errors import ChannelProvError
from channelprov.core.logging import configure_logging
from channelprov.providers.meta.graph import MetaGraphClient
from channelprov.services.audit import ProvisioningStore
from channelprov.services.provisioning.workflow import ProvisioningWorkflow


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Show a tenant's messaging-channel provisioning status and recent steps."
    )
    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--limit", type=int, default=20, help="Number of log entries to show")
    parser.add_argument("--step", default=None, help="Only show log entries for this step")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Re-run discovery for a tenant awaiting manual account creation",
    )
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    return parser


async def _run(args: argparse.Namespace) -> int:
    store = ProvisioningStore()
    graph = MetaGraphClient()
    workflow = ProvisioningWorkflow(store, graph)
    try:
        refreshed = None
        if args.refresh:
            refreshed = (await workflow.provision(args.tenant, mode="refresh")).to_dict()
        status = await workflow.get_status(args.tenant)
        entries = await store.list_logs(args.tenant, step=args.step, limit=args.limit)
    finally:
        await graph.aclose()

    logs = [
        {
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
            "step": entry.step,
            "strategy": entry.strategy,
            "success": entry.success,
            "error_message": entry.error_message,
            "details": entry.details,
        }
        for entry in entries
    ]
    if args.json:
        print(json.dumps({"refresh": refreshed, "status": status, "logs": logs}, indent=2, default=str))
        return 0

    if refreshed is not None:
        print(f"refresh: status={refreshed['status']} detail={refreshed['detail']}")
    print(f"tenant: {status['tenant_id']}")
    for key, value in status.items():
        if key == "tenant_id":
            continue
        print(f"  {key}: {value}")
    print("recent steps:")
    for item in logs:
        outcome = "ok" if item["success"] else "FAIL"
        strategy = f" [{item['strategy']}]" if item["strategy"] else ""
        error = f" {item['error_message']}" if item["error_message"] else ""
        print(f"  {item['created_at']} {item['step']}{strategy} {outcome}{error}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_run(args))
    except ChannelProvError as exc:
        print(f"provisioning_status failed: {exc}", file=sys.stderr)
        return 2
    except Exception as exc:  # noqa: BLE001 - surface unexpected failures clearly
        print(f"provisioning_status failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
