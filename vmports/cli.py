"""CLI entry points for VM-Ports."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import List, Optional

from vmports.collisions import ForwardedPortCollisionHandler
from vmports.config import RunSettings, load_machines, parse_env, select_machines
from vmports.constants import LEASE_DIR_NAME, LOCK_LABEL, WILDCARD_HOST_IP
from vmports.exceptions import ManagerError
from vmports.leases import LeaseStore
from vmports.lock import ProcessLock
from vmports.models import ExtraInUse, MachineConfig, ResolvedForward
from vmports.network import render_port_forwards_xml
from vmports.utils import log


def show_config(machines: List[MachineConfig], settings: RunSettings) -> None:
    """Print the resolved configuration and exit."""
    for field in dataclasses.fields(settings):
        print(f"  {field.name}: {getattr(settings, field.name)}")
    for machine in machines:
        first, last = machine.usable_port_range[0], machine.usable_port_range[-1]
        print(f"  machine: {machine.name}")
        print(f"    data_dir: {machine.data_dir}")
        print(f"    env_dir: {machine.env_dir}")
        print(f"    usable_port_range: {first}-{last}")
        for i, rule in enumerate(machine.forwarded_ports):
            print(f"    [{i}]:")
            for sub_field in dataclasses.fields(rule):
                print(f"      {sub_field.name}: {getattr(rule, sub_field.name)}")


def list_leases(machines: List[MachineConfig], settings: RunSettings) -> None:
    """Print the live forwarded port leases of each state directory."""
    env_dirs = list(dict.fromkeys(machine.env_dir for machine in machines))
    for env_dir in env_dirs:
        store = LeaseStore(env_dir / LEASE_DIR_NAME, ttl=settings.lease_ttl)
        leases = store.leases()
        if not leases:
            log("INFO", f"{env_dir}: no active leases")
            continue
        log("INFO", f"{env_dir}: {len(leases)} active lease(s)")
        for lease in leases:
            age = store.clock() - lease.created_at
            print(f"  {lease.host_ip or WILDCARD_HOST_IP}:{lease.host_port}  owner={lease.owner}  age={age:.0f}s")


def print_resolution(machine: MachineConfig, resolved: List[ResolvedForward], with_xml: bool = False) -> None:
    lines: List[str] = [f"  Machine: {machine.name}"]
    for fwd in resolved:
        host = f"{fwd.host_ip or WILDCARD_HOST_IP}:{fwd.host_port}"
        if fwd.rule.disabled:
            status = "disabled"
        elif fwd.repaired:
            status = f"repaired from {fwd.original_host_port}"
        elif fwd.host_port != fwd.original_host_port:
            status = f"remapped from {fwd.original_host_port}"
        else:
            status = "ok"
        label = fwd.rule.id or "-"
        lines.append(f"  {label:<8} {host:>21} -> guest:{fwd.guest_port}/{fwd.protocol}  ({status})")

    max_len = max(len(line) for line in lines)
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * (max_len + 2)}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * (max_len + 2)}{reset}", flush=True)

    if with_xml:
        xml, _ = render_port_forwards_xml(resolved)
        print(xml, flush=True)


def claim_resolved_ports(extra_in_use: ExtraInUse, resolved: List[ResolvedForward]) -> None:
    """Record a machine's final host ports so later machines in the batch avoid them."""
    for fwd in resolved:
        if not fwd.rule.arbitrated:
            continue
        extra_in_use.setdefault(fwd.host_port, set()).add(fwd.host_ip or WILDCARD_HOST_IP)


def resolve_machines(
    machines: List[MachineConfig],
    settings: RunSettings,
    used_by_libvirt: bool = False,
    with_xml: bool = False,
) -> List[List[ResolvedForward]]:
    extra_in_use: ExtraInUse = {port: set(ips) for port, ips in settings.extra_in_use.items()}
    results: List[List[ResolvedForward]] = []
    for machine in machines:
        claims: ExtraInUse = {port: set(ips) for port, ips in extra_in_use.items()}
        if used_by_libvirt:
            from vmports import backend

            for port, addresses in backend.read_used_ports(exclude=machine.name).items():
                claims.setdefault(port, set()).update(addresses)

        handler = ForwardedPortCollisionHandler(
            machine,
            repair=settings.repair,
            extra_in_use=claims,
            remap=settings.remap,
            lease_store=LeaseStore(machine.env_dir / LEASE_DIR_NAME, ttl=settings.lease_ttl),
            lock=ProcessLock(
                machine.env_dir,
                LOCK_LABEL,
                retry_interval=settings.lock_retry_interval,
                max_attempts=settings.lock_max_attempts,
            ),
        )

        def _report(resolved: List[ResolvedForward], machine: MachineConfig = machine) -> List[ResolvedForward]:
            print_resolution(machine, resolved, with_xml=with_xml)
            return resolved

        resolved = handler.call(_report)
        claim_resolved_ports(extra_in_use, resolved)
        results.append(resolved)
    return results


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="VM-Ports forwarded port collision handler")
    parser.add_argument("--config", type=Path, default=None, help="Machine definition file (YAML)")
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Directory shared by all machines for leases and the collision lock (default: STATE_DIR)",
    )
    parser.add_argument(
        "--machine",
        action="append",
        default=None,
        metavar="NAME",
        help="Only handle the named machine (repeatable; default: all, in file order)",
    )
    parser.add_argument("--no-repair", action="store_true", help="Report collisions instead of repairing them")
    parser.add_argument(
        "--used-by-libvirt",
        action="store_true",
        help="Treat host ports forwarded by other running libvirt domains as in use",
    )
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--list-leases", action="store_true", help="List active forwarded port leases and exit")
    parser.add_argument("--xml", action="store_true", help="Print the libvirt interface XML for each machine")
    args = parser.parse_args(argv)

    try:
        settings = parse_env()
        if args.no_repair:
            settings.repair = False
        machines = select_machines(load_machines(args.config, args.state_dir), args.machine)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(machines, settings)
        return 0

    try:
        if args.list_leases:
            list_leases(machines, settings)
            return 0
        results = resolve_machines(
            machines,
            settings,
            used_by_libvirt=args.used_by_libvirt,
            with_xml=args.xml,
        )
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted; forwarded port leases released")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1

    repaired = sum(1 for resolved in results for fwd in resolved if fwd.repaired)
    log("SUCCESS", f"Resolved forwarded ports for {len(results)} machine(s); {repaired} repaired")
    return 0
