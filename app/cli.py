#!/usr/bin/env python3
"""
fleetctl — Command-line interface for the Fleet Orchestrator.

Usage:
    fleetctl status
    fleetctl vps list
    fleetctl vps add shared-eu-1 203.0.113.10 --max-tenants 20
    fleetctl vps stats
    fleetctl deploy "Acme Corp" --model dedicated --email admin@acme.test --wait
    fleetctl deployment <deployment-id>
    fleetctl queue
"""
import argparse
import json
import os
import sys
import time
from urllib.parse import urljoin

import requests


DEFAULT_BASE = os.environ.get("FLEET_URL", "http://localhost:8000")
API_PREFIX = os.environ.get("FLEET_API_PREFIX", "/api")
TERMINAL_STATUSES = ("active", "failed")


def _api(args, path: str) -> str:
    return urljoin(args.url, f"{API_PREFIX}{path}")


def _fail(resp) -> None:
    try:
        body = resp.json()
        message = body.get("detail", body)
        code = body.get("error", "")
    except ValueError:
        message, code = resp.text[:500], ""
    print(f"Error {resp.status_code}{f' ({code})' if code else ''}: {message}")
    sys.exit(1)


def cmd_status(args):
    """Check API health."""
    try:
        resp = requests.get(urljoin(args.url, "/health"), timeout=10)
    except requests.ConnectionError:
        print(f"Cannot connect to {args.url}")
        sys.exit(1)

    data = resp.json()
    print(f"Status: {data.get('status', '?')}")
    print(f"Version: {data.get('version', '?')}")
    print(f"Uptime: {data.get('uptime_seconds', '?')}s")
    print(f"Database: {data.get('database', '?')}")
    print(f"Provisioner: {data.get('provisioner', '?')}")
    print(f"Running deployments: {data.get('running_deployments', 0)}")


def cmd_vps(args):
    """Fleet commands: list, add, stats."""
    if args.vps_action == "list":
        path = "/vps/available" if args.available else "/vps"
        resp = requests.get(_api(args, path), timeout=10)
        if resp.status_code != 200:
            _fail(resp)
        servers = resp.json()
        if not servers:
            print("No VPS registered.")
            return
        for v in servers:
            capacity = f"{v['current_tenants']}/{v['max_tenants']}" if v.get("max_tenants") else f"{v['current_tenants']}/1"
            print(
                f"  {v['id'][:8]}  {v['name']:24s}  {v['deployment_type']:9s}  "
                f"{v['status']:12s}  {v.get('ip_address') or '-':15s}  {capacity}"
            )

    elif args.vps_action == "add":
        payload = {
            "name": args.name,
            "ip_address": args.ip_address,
            "deployment_type": args.type,
            "location": args.location,
            "cpu_cores": args.cpu_cores,
            "memory_mb": args.memory_mb,
            "disk_gb": args.disk_gb,
        }
        if args.type == "shared":
            payload["max_tenants"] = args.max_tenants
        resp = requests.post(_api(args, "/vps"), json=payload, timeout=10)
        if resp.status_code != 201:
            _fail(resp)
        vps = resp.json()
        print(f"Registered {vps['deployment_type']} VPS {vps['name']} ({vps['id']})")

    elif args.vps_action == "stats":
        resp = requests.get(_api(args, "/vps/stats"), timeout=10)
        if resp.status_code != 200:
            _fail(resp)
        stats = resp.json()
        for key, value in stats.items():
            print(f"  {key:16s} {value}")


def _print_deployment(data: dict, verbose: bool = False) -> None:
    print(f"Deployment {data['id']}: {data['status']}")
    if data.get("status_message"):
        print(f"  {data['status_message']}")
    if data.get("error_message"):
        print(f"  Error ({data.get('error_code') or 'unknown'}): {data['error_message']}")
    if data.get("access_url"):
        print(f"  URL: {data['access_url']}")
    if data.get("credentials") and verbose:
        print(f"  Credentials: {json.dumps(data['credentials'])}")
    for entry in data.get("logs", []):
        print(f"    {entry['timestamp']}  {entry['message']}")


def _fetch_deployment(args, deployment_id: str) -> dict:
    resp = requests.get(_api(args, f"/instances/{deployment_id}/status"), timeout=10)
    if resp.status_code != 200:
        _fail(resp)
    return resp.json()


def cmd_deploy(args):
    """Create a tenant instance."""
    payload = {
        "organizationName": args.organization,
        "tier": args.tier,
        "deploymentModel": args.model,
        "adminUser": {"email": args.email, "name": args.admin_name},
    }
    if args.slug:
        payload["slug"] = args.slug
    if args.vps:
        payload["vpsId"] = args.vps

    resp = requests.post(_api(args, "/instances"), json=payload, timeout=30)
    if resp.status_code not in (201, 202):
        _fail(resp)
    data = resp.json()

    if resp.status_code == 201:
        vps = data["vps"]
        print(f"Tenant {data['tenant']['slug']} placed on {vps['name']} ({vps['current_tenants']}/{vps['max_tenants']})")
        return

    deployment_id = data["deploymentId"]
    print(f"Deployment {deployment_id} accepted for {data['tenant']['slug']}")
    if not args.wait:
        print(f"Follow with: fleetctl deployment {deployment_id}")
        return

    seen = 0
    while True:
        status = _fetch_deployment(args, deployment_id)
        for entry in status.get("logs", [])[seen:]:
            print(f"  {entry['message']}")
        seen = len(status.get("logs", []))
        if status["status"] in TERMINAL_STATUSES:
            break
        time.sleep(args.interval)

    if status["status"] == "failed":
        print(f"Deployment failed: {status.get('error_message')}")
        sys.exit(1)
    print(f"Tenant live at {status.get('access_url')}")
    if args.verbose:
        print(f"Credentials: {json.dumps(status.get('credentials'))}")


def cmd_deployment(args):
    """Show a deployment's status and log."""
    _print_deployment(_fetch_deployment(args, args.deployment_id), verbose=args.verbose)


def cmd_queue(args):
    """Deployment counts by status."""
    resp = requests.get(_api(args, "/deployments/stats"), timeout=10)
    if resp.status_code != 200:
        _fail(resp)
    for key, value in resp.json().items():
        print(f"  {key:18s} {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetctl",
        description="Fleet Orchestrator CLI — manage VPS and tenant deployments",
    )
    parser.add_argument("--url", default=DEFAULT_BASE, help="API base URL")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command", help="Command")

    # status
    p_status = sub.add_parser("status", help="Check API health")
    p_status.set_defaults(func=cmd_status)

    # vps
    p_vps = sub.add_parser("vps", help="Fleet commands")
    vps_sub = p_vps.add_subparsers(dest="vps_action", required=True)
    p_list = vps_sub.add_parser("list", help="List VPS")
    p_list.add_argument("--available", action="store_true", help="Only shared VPS with free slots")
    p_add = vps_sub.add_parser("add", help="Register an existing server")
    p_add.add_argument("name")
    p_add.add_argument("ip_address")
    p_add.add_argument("--type", choices=["shared", "dedicated"], default="shared")
    p_add.add_argument("--max-tenants", type=int, default=10)
    p_add.add_argument("--location", default=None)
    p_add.add_argument("--cpu-cores", type=int, default=4)
    p_add.add_argument("--memory-mb", type=int, default=8192)
    p_add.add_argument("--disk-gb", type=int, default=100)
    vps_sub.add_parser("stats", help="Fleet statistics")
    p_vps.set_defaults(func=cmd_vps)

    # deploy
    p_deploy = sub.add_parser("deploy", help="Create a tenant instance")
    p_deploy.add_argument("organization", help="Organization name")
    p_deploy.add_argument("--email", required=True, help="Admin user email")
    p_deploy.add_argument("--admin-name", default=None, help="Admin user name")
    p_deploy.add_argument("--slug", default=None)
    p_deploy.add_argument("--tier", choices=["starter", "professional", "enterprise"], default="starter")
    p_deploy.add_argument("--model", choices=["shared", "dedicated"], default="shared")
    p_deploy.add_argument("--vps", default=None, help="Shared VPS id (default: least loaded)")
    p_deploy.add_argument("--wait", action="store_true", help="Poll a dedicated deployment until it finishes")
    p_deploy.add_argument("--interval", type=float, default=5.0, help="Seconds between polls with --wait")
    p_deploy.set_defaults(func=cmd_deploy)

    # deployment
    p_dep = sub.add_parser("deployment", help="Show deployment status")
    p_dep.add_argument("deployment_id")
    p_dep.set_defaults(func=cmd_deployment)

    # queue
    p_queue = sub.add_parser("queue", help="Deployment queue statistics")
    p_queue.set_defaults(func=cmd_queue)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
