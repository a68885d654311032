"""CLI entry points for the libvirt infra provider.

Runs reconciliation passes locally against a YAML state file, standing in for
the orchestrator that normally drives :class:`ProvisionPipeline` and
:class:`Deprovisioner`.
"""

from __future__ import annotations

import argparse
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from libvirt_provider.config import load_provider_config
from libvirt_provider.exceptions import ManagerError
from libvirt_provider.images import ImageCache
from libvirt_provider.models import FATAL, MachineState, Outcome, ProviderConfig
from libvirt_provider.pipeline import ProvisionContext, ProvisionPipeline
from libvirt_provider.teardown import Deprovisioner
from libvirt_provider.utils import log

if TYPE_CHECKING:
    from libvirt_provider.hypervisor import LibvirtBroker

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_RETRY = 75  # EX_TEMPFAIL


def load_state(path: Path) -> MachineState:
    if not path.exists():
        return MachineState()
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ManagerError(f"State file {path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise ManagerError(f"State file {path} must contain a mapping")
    return MachineState.from_dict(data)


def save_state(path: Path, state: MachineState) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(yaml.safe_dump(state.to_dict(), sort_keys=False, default_flow_style=False))
    tmp.replace(path)


def reconcile(
    run_pass: Callable[[], Outcome],
    persist: Callable[[], None],
    watch: bool = False,
    max_passes: int = 100,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Invoke ``run_pass`` until the outcome is terminal or ``max_passes`` is reached."""
    passes = 0
    while True:
        passes += 1
        outcome = run_pass()
        persist()
        if outcome.ok:
            log("SUCCESS", "Reconciliation complete")
            return EXIT_OK
        if outcome.action == FATAL:
            log("ERROR", f"{outcome.step or 'pass'} failed: {outcome.reason}")
            return EXIT_FATAL
        if not watch or passes >= max_passes:
            log("WARN", f"Retry requested in {outcome.delay:g}s: {outcome.reason}")
            return EXIT_RETRY
        log("INFO", f"Pass {passes}: retrying in {outcome.delay:g}s ({outcome.reason})")
        sleep(outcome.delay)


def connect_broker(uri: str) -> LibvirtBroker:
    # libvirt bindings are only required once a connection is made
    from libvirt_provider.hypervisor import LibvirtBroker

    return LibvirtBroker.connect(uri)


def _cache_from_config(cfg: ProviderConfig) -> ImageCache:
    return ImageCache(
        cache_path=cfg.cache_path,
        base_url=cfg.image_factory_url,
        max_age=cfg.cache_max_age,
        cleanup_interval=cfg.cache_cleanup_interval,
        download_timeout=cfg.download_timeout,
    )


def run_provision(args: argparse.Namespace, cfg: ProviderConfig) -> int:
    state_path = Path(args.state)
    provider_data = Path(args.request).read_text()
    state = load_state(state_path)
    ctx = ProvisionContext(
        request_id=args.id,
        provider_data=provider_data,
        state=state,
        talos_version=args.talos_version,
        generate_schematic_id=lambda: args.schematic_id,
        set_machine_uuid=lambda machine_uuid: log("INFO", f"Machine UUID: {machine_uuid}"),
    )

    broker = connect_broker(cfg.libvirt_uri)
    try:
        cache = _cache_from_config(cfg)
        if args.watch:
            cache.start()
        try:
            pipeline = ProvisionPipeline(broker, cache)
            return reconcile(
                lambda: pipeline.run(ctx),
                lambda: save_state(state_path, state),
                watch=args.watch,
                max_passes=args.max_passes,
            )
        finally:
            cache.close()
    finally:
        broker.close()


def run_deprovision(args: argparse.Namespace, cfg: ProviderConfig) -> int:
    state_path = Path(args.state)
    state = load_state(state_path)

    broker = connect_broker(cfg.libvirt_uri)
    try:
        deprovisioner = Deprovisioner(broker)
        return reconcile(
            lambda: deprovisioner.run(args.id, state),
            lambda: save_state(state_path, state),
            watch=args.watch,
            max_passes=args.max_passes,
        )
    finally:
        broker.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="libvirt infra provider")
    parser.add_argument("--config-file", default=None, help="libvirt provider config (YAML)")
    sub = parser.add_subparsers(dest="command", required=True)

    def _common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--id", required=True, help="Machine request ID (used as the domain name)")
        p.add_argument("--state", required=True, help="Path of the machine state file (YAML)")
        p.add_argument("--watch", action="store_true", help="Keep reconciling until done instead of one pass")
        p.add_argument("--max-passes", type=int, default=100, help="Pass budget when --watch is set")

    prov = sub.add_parser("provision", help="Create and start a VM")
    _common(prov)
    prov.add_argument("--request", required=True, help="Path of the provider data (YAML)")
    prov.add_argument("--talos-version", required=True, help="Talos version to install, e.g. v1.11.3")
    prov.add_argument("--schematic-id", required=True, help="Image factory schematic ID")

    deprov = sub.add_parser("deprovision", help="Tear down a VM and its volumes")
    _common(deprov)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = load_provider_config(Path(args.config_file) if args.config_file else None)
        if args.command == "provision":
            return run_provision(args, cfg)
        return run_deprovision(args, cfg)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return EXIT_FATAL
    except OSError as exc:
        log("ERROR", f"I/O error: {exc}")
        return EXIT_FATAL
