"""The provisioning pipeline: ordered steps over one ProvisionContext.

Each step names what it needs from the context before it runs and what it
leaves behind afterwards.  Whatever the outcome, the resource ledger is
unwound once the pipeline stops, so containers are closed, the volume group
is deactivated and the target mounts are released.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from . import devices, safety
from .errors import LuksMediaError
from .executil import info, trace, warn
from .installer import await_install_configured, await_install_finished
from .keybinding import run_binder
from .luks_lvm import boot_container, compose_volumes, format_container, open_container, root_container
from .model import Device, EncryptedContainer, Options, ProvisionContext
from .mounts import format_filesystems, mount_target
from .partitioning import apply_layout, describe_plan, plan_layout
from .prompts import acquire_passphrase, confirm_destruction, reprompt_passphrase

Check = Callable[[ProvisionContext], bool]

DRY_RUN_PASSPHRASE = "dry-run"


class StepConditionError(LuksMediaError):
    """A step ran out of order or did not leave the state it promised."""


@dataclass
class Step:
    name: str
    action: Callable[[ProvisionContext], Any]
    requires: Optional[Check] = None
    ensures: Optional[Check] = None
    skip_in_dry_run: bool = False


def new_context(options: Options) -> ProvisionContext:
    return ProvisionContext(options=options, device=Device(options.device))


def prepare(ctx: ProvisionContext) -> Dict[str, Any]:
    """Refuse unsafe devices and compute the plan; nothing is written."""

    opts = ctx.options
    if not (opts.dry_run or opts.plan_only):
        safety.require_root()
    snapshot = safety.check_preconditions(ctx.device.path)
    capacity = devices.capacity_bytes(ctx.device.path)
    ctx.plan = plan_layout(ctx.device, capacity, opts.root_size_gib, opts.swap_size_gib, opts.data_label)
    return {"safety": snapshot, "capacity_bytes": capacity}


def _plan_summary(ctx: ProvisionContext) -> str:
    lines = [f"Partition plan for {ctx.device.path}:"]
    for row in describe_plan(ctx.plan):
        lines.append(
            f"  {row['path']:<18} {row['label']:<12} {row['size_mib']:>9} MiB  "
            f"type {row['type']}  {row['filesystem']}"
        )
    return "\n".join(lines)


class Pipeline:
    """Runs steps strictly in order and unwinds the ledger at the end."""

    def __init__(
            self,
            read: Optional[Callable[[str], str]] = None,
            confirm_read: Optional[Callable[[str], str]] = None,
            key_stream=None,
            cancel: Optional[threading.Event] = None,
    ) -> None:
        self.read = read
        self.confirm_read = confirm_read
        self.key_stream = key_stream
        self.cancel = cancel
        self.steps = self.build_steps()

    # --- step actions ---------------------------------------------------

    def _confirm(self, ctx: ProvisionContext) -> None:
        if ctx.options.assume_yes or ctx.dry_run:
            trace("workflow.confirm_skipped", assume_yes=ctx.options.assume_yes, dry_run=ctx.dry_run)
            return
        confirm_destruction(ctx.device.path, _plan_summary(ctx), read=self.confirm_read)

    def _acquire_passphrases(self, ctx: ProvisionContext) -> None:
        plan = ctx.plan
        ctx.boot = boot_container(plan.path_for("boot"))
        ctx.root = root_container(plan.path_for("system"))
        for container in ctx.containers():
            if ctx.dry_run:
                ctx.passphrases[container.mapped_name] = DRY_RUN_PASSPHRASE
                continue
            label = f"{container.mapped_name} ({container.source}, {container.luks_type})"
            ctx.passphrases[container.mapped_name] = acquire_passphrase(label, read=self.read)

    @staticmethod
    def _encrypt(ctx: ProvisionContext, container: EncryptedContainer) -> str:
        passphrase = ctx.passphrases[container.mapped_name]
        format_container(container, passphrase, overwrite=ctx.options.overwrite, dry_run=ctx.dry_run)
        return open_container(container, passphrase=passphrase, ledger=ctx.ledger, dry_run=ctx.dry_run)

    def _encrypt_boot(self, ctx: ProvisionContext) -> str:
        return self._encrypt(ctx, ctx.boot)

    def _encrypt_root(self, ctx: ProvisionContext) -> str:
        return self._encrypt(ctx, ctx.root)

    @staticmethod
    def _compose(ctx: ProvisionContext) -> List[str]:
        ctx.volume_group = compose_volumes(
            ctx.root,
            ctx.options.vg_name,
            ctx.options.swap_size_gib,
            ledger=ctx.ledger,
            dry_run=ctx.dry_run,
        )
        return list(ctx.volume_group.created)

    def _await_configured(self, ctx: ProvisionContext) -> str:
        return await_install_configured(ctx, cancel=self.cancel)

    def _await_finished(self, ctx: ProvisionContext) -> None:
        await_install_finished(ctx, stream=self.key_stream)

    @staticmethod
    def _mount(ctx: ProvisionContext) -> List[str]:
        ctx.target = mount_target(ctx)
        return list(ctx.target.binds)

    def _bind(self, ctx: ProvisionContext) -> Dict[str, Any]:
        return run_binder(ctx, reprompt=lambda label: reprompt_passphrase(label, read=self.read))

    # --- wiring ---------------------------------------------------------

    def build_steps(self) -> List[Step]:
        return [
            Step("preconditions", prepare, ensures=lambda c: c.plan is not None),
            Step("confirm", self._confirm, requires=lambda c: c.plan is not None),
            Step("passphrases", self._acquire_passphrases, requires=lambda c: c.plan is not None,
                 ensures=lambda c: all(c.passphrases.get(x.mapped_name) for x in c.containers())),
            Step("partition", lambda c: apply_layout(c.plan, dry_run=c.dry_run),
                 requires=lambda c: c.plan is not None),
            Step("encrypt_boot", self._encrypt_boot,
                 requires=lambda c: c.boot is not None, ensures=lambda c: c.boot.is_open),
            Step("encrypt_root", self._encrypt_root,
                 requires=lambda c: c.root is not None, ensures=lambda c: c.root.is_open),
            Step("compose_volumes", self._compose,
                 requires=lambda c: c.root.is_open, ensures=lambda c: c.volume_group is not None),
            Step("filesystems", format_filesystems,
                 requires=lambda c: c.boot.is_open and c.volume_group is not None),
            Step("installer_configured", self._await_configured, skip_in_dry_run=True),
            Step("installer_finished", self._await_finished, skip_in_dry_run=True),
            Step("mount_target", self._mount,
                 requires=lambda c: c.volume_group is not None, ensures=lambda c: c.target is not None),
            Step("bind_keyfile", self._bind,
                 requires=lambda c: c.target is not None,
                 ensures=lambda c: c.keyfile is not None and len(c.keyfile.bound) == len(c.containers())),
        ]

    def step_names(self) -> List[str]:
        return [s.name for s in self.steps]

    def run(self, ctx: ProvisionContext) -> Dict[str, Any]:
        report: Dict[str, Any] = {"device": ctx.device.path, "dry_run": ctx.dry_run, "steps": {}}
        current = None
        try:
            for step in self.steps:
                current = step.name
                if step.skip_in_dry_run and ctx.dry_run:
                    trace("workflow.step_skipped", step=step.name)
                    report["steps"][step.name] = "skipped"
                    continue
                if step.requires is not None and not step.requires(ctx):
                    raise StepConditionError(f"step {step.name!r} started without its prerequisites")
                info(f"step {step.name}")
                trace("workflow.step_start", step=step.name)
                outcome = step.action(ctx)
                if step.ensures is not None and not step.ensures(ctx):
                    raise StepConditionError(f"step {step.name!r} did not complete its work")
                trace("workflow.step_done", step=step.name)
                report["steps"][step.name] = outcome if outcome is not None else "ok"
        except Exception as exc:
            trace("workflow.failed", step=current, error=str(exc), kind=type(exc).__name__)
            exc.step = current
            raise
        finally:
            failures = ctx.ledger.unwind()
            report["release_failures"] = failures
            for failure in failures:
                warn(f"cleanup incomplete: {failure}")
        report["plan"] = describe_plan(ctx.plan)
        return report


def plan_report(ctx: ProvisionContext, pipeline: Optional[Pipeline] = None) -> Dict[str, Any]:
    """Computed plan and the step sequence, for ``--plan``."""

    pipeline = pipeline or Pipeline()
    details = prepare(ctx)
    return {
        "device": ctx.device.path,
        "capacity_bytes": details["capacity_bytes"],
        "partitions": describe_plan(ctx.plan),
        "volume_group": {
            "name": ctx.options.vg_name,
            "swap_gib": ctx.options.swap_size_gib,
            "root": "100%FREE",
        },
        "keyfile": ctx.options.keyfile_path,
        "steps": pipeline.step_names(),
    }
