"""
kubetier command line.

    kubetier [--kubeconfig F] [--context C] [--timeout S] [--log-level L] <command> ...

Commands: deploy, update, status, list, delete. Exit code 0 on success, 1 on
any kubetier error, 2 on usage errors.
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

import yaml

from .cluster.manager import ClusterManager, ConfigLayers
from .cluster.planner import NOOP, UpdatePlan
from .config import get_settings
from .errors import ImmutableFieldError, KubetierError
from .kubernetes.client import KubernetesClient
from .resolver import CLI_FLAG_FIELDS, load_config_file

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )


# =============================================================================
# Parser
# =============================================================================

def _add_cluster_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--cluster-id", dest="cluster_id", required=True, help="Cluster identifier")
    parser.add_argument("-n", "--namespace", help="Kubernetes namespace")
    parser.add_argument("--config-file", help="YAML cluster configuration file")
    parser.add_argument("--master-replicas", type=int, help="Number of masters (odd)")
    parser.add_argument("--worker-replicas", type=int, help="Number of workers")
    parser.add_argument("--image", help="Image for both tiers")
    parser.add_argument("--master-image", help="Image for the master tier")
    parser.add_argument("--worker-image", help="Image for the worker tier")
    parser.add_argument("--image-pull-policy", help="Always, IfNotPresent or Never")
    parser.add_argument("--storage-class", help="StorageClass for both tiers")
    parser.add_argument("--master-storage-class", help="StorageClass for master volumes")
    parser.add_argument("--worker-storage-class", help="StorageClass for worker volumes")
    parser.add_argument("--master-storage-size", help="Master volume size, e.g. 10Gi")
    parser.add_argument("--worker-storage-size", help="Worker volume size, e.g. 20Gi")
    parser.add_argument("--service-type", help="ClusterIP, NodePort or LoadBalancer")
    parser.add_argument("--master-pod-template", help="YAML pod template merged into master pods")
    parser.add_argument("--worker-pod-template", help="YAML pod template merged into worker pods")
    parser.add_argument(
        "-D", dest="dynamic", action="append", default=[], metavar="KEY=VALUE",
        help="Dynamic override, e.g. -D kubernetes.worker.replicas=5 (repeatable)"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kubetier", description="Manage tiered storage clusters on Kubernetes")
    parser.add_argument("--kubeconfig", help="Path to kubeconfig (default: in-cluster, then ~/.kube/config)")
    parser.add_argument("--context", help="kubeconfig context")
    parser.add_argument("--timeout", type=float, help="Deadline for the whole command in seconds")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")

    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy = subparsers.add_parser("deploy", help="Create a new cluster")
    _add_cluster_flags(deploy)
    deploy.add_argument("--no-wait", action="store_true", help="Do not wait for pods to become ready")
    deploy.add_argument("--skip-storage-check", action="store_true", help="Do not verify StorageClasses exist")

    update = subparsers.add_parser("update", help="Update a running cluster")
    _add_cluster_flags(update)
    update.add_argument("--dry-run", action="store_true", help="Print the plan without applying it")

    status = subparsers.add_parser("status", help="Show the live state of a cluster")
    status.add_argument("cluster_id")
    status.add_argument("-n", "--namespace")

    list_parser = subparsers.add_parser("list", help="List clusters")
    list_parser.add_argument("-n", "--namespace", dest="namespaces", action="append", default=[])

    delete = subparsers.add_parser("delete", help="Delete a cluster")
    delete.add_argument("cluster_id")
    delete.add_argument("-n", "--namespace")
    delete.add_argument("--delete-pvcs", action="store_true", help="Also delete the cluster's PersistentVolumeClaims")

    return parser


def layers_from_args(args: argparse.Namespace) -> ConfigLayers:
    """Collect resolver inputs from parsed arguments."""
    cli_flags: Dict[str, Any] = {}
    for name, _ in CLI_FLAG_FIELDS:
        value = getattr(args, name, None)
        if value is not None:
            cli_flags[name] = value
    return ConfigLayers(
        file_config=load_config_file(args.config_file) if args.config_file else None,
        cli_flags=cli_flags,
        dynamic_overrides=list(args.dynamic or []),
    )


# =============================================================================
# Output
# =============================================================================

def print_plan(update_plan: UpdatePlan, show_noop: bool = False) -> None:
    entries = [e for e in update_plan.entries if show_noop or e.action != NOOP]
    print(f"Plan for {update_plan.cluster_id} ({update_plan.namespace}): {update_plan.verdict}")
    if not entries:
        print("  No changes")
        return
    for entry in entries:
        print(f"  [{entry.action:6}] {entry.resource} {entry.field}: {entry.old!r} -> {entry.new!r}")


def print_table(rows: List[List[str]]) -> None:
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


# =============================================================================
# Commands
# =============================================================================

async def cmd_deploy(manager: ClusterManager, args: argparse.Namespace) -> None:
    spec = await manager.deploy(
        layers_from_args(args),
        wait=not args.no_wait,
        check_storage=not args.skip_storage_check
    )
    print(f"✅ Cluster {spec.cluster_id} deployed in namespace {spec.namespace}")
    print(f"   Masters: {spec.master.replicas}  Workers: {spec.worker.replicas}")


async def cmd_update(manager: ClusterManager, args: argparse.Namespace) -> None:
    update_plan = await manager.update(layers_from_args(args), dry_run=args.dry_run)
    print_plan(update_plan)
    if args.dry_run:
        print("Dry run: nothing was applied")
    elif update_plan.changed:
        print(f"✅ Applied {len(update_plan.patch_entries)} change(s)")


async def cmd_status(manager: ClusterManager, args: argparse.Namespace) -> None:
    namespace = args.namespace or get_settings().default_namespace
    descriptor = await manager.status(args.cluster_id, namespace)
    print(yaml.dump(descriptor.to_dict(), default_flow_style=False, sort_keys=False), end="")


async def cmd_list(manager: ClusterManager, args: argparse.Namespace) -> None:
    namespaces = args.namespaces or [get_settings().default_namespace]
    summaries = await manager.list_clusters(namespaces)
    if not summaries:
        print("No clusters found.")
        return
    rows = [["CLUSTER", "NAMESPACE", "MASTER", "WORKER", "CREATED"]]
    for summary in summaries:
        rows.append([
            summary.cluster_id,
            summary.namespace,
            f"{summary.master_ready}/{summary.master_total}",
            f"{summary.worker_ready}/{summary.worker_total}",
            str(summary.created_at or "-"),
        ])
    print_table(rows)


async def cmd_delete(manager: ClusterManager, args: argparse.Namespace) -> None:
    namespace = args.namespace or get_settings().default_namespace
    deleted = await manager.delete(args.cluster_id, namespace, delete_pvcs=args.delete_pvcs)
    for resource in deleted:
        print(f"  deleted {resource}")
    print(f"✅ Cluster {args.cluster_id} deleted from namespace {namespace}")


COMMANDS = {
    "deploy": cmd_deploy,
    "update": cmd_update,
    "status": cmd_status,
    "list": cmd_list,
    "delete": cmd_delete,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)

    try:
        client = KubernetesClient(kubeconfig=args.kubeconfig, context=args.context)
        manager = ClusterManager(client, timeout=args.timeout)
        asyncio.run(COMMANDS[args.command](manager, args))
    except KubetierError as e:
        logger.debug(f"{args.command} failed", exc_info=True)
        if isinstance(e, ImmutableFieldError) and e.plan is not None:
            print_plan(e.plan)
        print(f"❌ {args.command} failed: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
