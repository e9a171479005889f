"""Deploy and rollback steps for the jailship pipeline.

Services are read from the context (`transport`, `slots`, `health_probe`,
`proxy`, `secrets`, `release`, `build_jail`, `migrations`, `accessories`) so each step
stays a thin adapter between the pipeline and one service call.
"""

from typing import List

from jailship.errors import JailshipError
from jailship.errors_catalog import actionable_error
from jailship.pipeline import Context, Step


class EnsureAccessories(Step):
    name = "Ensure accessories are running"

    def run(self, context: Context) -> Context:
        config = context["config"]
        accessory = config.postgresql_accessory()
        if accessory is None:
            return dict(context)

        started = context["accessories"].ensure_running(config, accessory)
        return {**context, "accessories_started": started}


class DestroyStaleJail(Step):
    name = "Destroy stale jail"

    def run(self, context: Context) -> Context:
        destroyed = context["slots"].destroy_stale()
        return {**context, "destroyed_slots": destroyed}


class BuildRelease(Step):
    name = "Build release"

    def run(self, context: Context) -> Context:
        tarball = context["release"].build(context["config"])
        return {**context, "tarball_path": tarball}


class UploadRelease(Step):
    name = "Upload release"

    def run(self, context: Context) -> Context:
        remote_path = context["release"].upload(context["transport"], context["tarball_path"], context["config"])
        return {**context, "remote_tarball_path": remote_path}

    def rollback(self, context: Context):
        remote_path = context.get("remote_tarball_path")
        if remote_path:
            context["release"].remove_remote(context["transport"], remote_path)


class EnsureBuildJail(Step):
    name = "Ensure build jail is running"

    def run(self, context: Context) -> Context:
        started = context["build_jail"].ensure_running(context["config"])
        return {**context, "build_jail_started": started}


class UploadSource(Step):
    name = "Upload source code"

    def run(self, context: Context) -> Context:
        context["build_jail"].upload_source(context["config"])
        return dict(context)


class RemoteBuild(Step):
    name = "Build release in build jail"

    def run(self, context: Context) -> Context:
        tarball = context["build_jail"].build_release(context["config"])
        return {**context, "remote_tarball_path": tarball}


class DetermineSlot(Step):
    name = "Determine deployment slot"

    def run(self, context: Context) -> Context:
        next_slot, current_slot = context["slots"].determine_next_slot()
        return {**context, "next_slot": next_slot, "current_slot": current_slot}


class LoadSecrets(Step):
    name = "Load secrets"

    def run(self, context: Context) -> Context:
        status, config = context["secrets"].merge_env(context["config"])
        if status == "skipped":
            context["console"].print("[blue]No secrets configured, skipping.[/blue]")
        else:
            context["console"].print("[green]Secrets loaded and merged into environment.[/green]")
        return {**context, "config": config, "secrets_status": status}


class CreateJail(Step):
    name = "Create jail"

    def run(self, context: Context) -> Context:
        slots = context["slots"]
        next_slot = context["next_slot"]
        if slots.is_running(next_slot):
            # Only reachable when both slots were left running.
            slots.destroy(next_slot)
        slots.create(next_slot)
        return dict(context)

    def rollback(self, context: Context):
        context["slots"].destroy(context["next_slot"])


class InstallRelease(Step):
    name = "Install release in jail"

    def run(self, context: Context) -> Context:
        context["slots"].install_payload(context["next_slot"], context["remote_tarball_path"])
        return dict(context)


class StartJail(Step):
    name = "Start jail"

    def run(self, context: Context) -> Context:
        slots = context["slots"]
        next_slot = context["next_slot"]
        slots.start(next_slot)
        slots.start_application(next_slot, context["config"].env)
        return dict(context)

    def rollback(self, context: Context):
        context["slots"].stop(context["next_slot"])


class RunMigrations(Step):
    name = "Run migrations"

    def run(self, context: Context) -> Context:
        config = context["config"]
        ran = context["migrations"].run(config, context["next_slot"], config.env)
        return {**context, "migrations_ran": ran}


class HealthCheck(Step):
    name = "Health check"

    def run(self, context: Context) -> Context:
        config = context["config"]
        health = config.health_check
        address = context["slots"].private_address(context["next_slot"])
        attempt = context["health_probe"].check(
            address,
            config.app_jail.port,
            path=health.path,
            attempts=health.attempts,
            interval=health.interval,
        )
        return {**context, "health_check_attempts": attempt}


class UpdateProxy(Step):
    name = "Update reverse proxy"

    def run(self, context: Context) -> Context:
        proxy = context["proxy"]
        previous = proxy.read()
        try:
            proxy.apply(proxy.render(context["config"], context["next_slot"]))
        except JailshipError:
            if previous is not None:
                proxy.restore(previous)
            raise
        return {**context, "previous_proxy_config": previous}

    def rollback(self, context: Context):
        previous = context.get("previous_proxy_config")
        if previous is not None:
            context["proxy"].restore(previous)


class RetirePreviousJail(Step):
    """Stops the previously active slot but keeps it on disk for rollback."""

    name = "Stop previous jail"

    def run(self, context: Context) -> Context:
        current_slot = context.get("current_slot")
        if current_slot is None or current_slot == context["next_slot"]:
            context["console"].print("[blue]No previous jail to stop.[/blue]")
            return dict(context)

        context["slots"].stop(current_slot)
        return {**context, "retired_slot": current_slot}


class ResolveRollbackTarget(Step):
    name = "Resolve rollback target"

    def run(self, context: Context) -> Context:
        slots = context["slots"]
        config = context["config"]

        current = slots.current_slot()
        if current is None:
            raise JailshipError(actionable_error("no_active_jail", app=config.app))

        target = slots.other_slot(current)
        if not slots.exists(target):
            raise JailshipError(actionable_error("rollback_target_missing", name=slots.unit_name(target)))

        context["console"].print(
            f"[blue]Rolling back from {slots.unit_name(current)} to {slots.unit_name(target)}[/blue]"
        )
        return {**context, "next_slot": target, "current_slot": current}


def deploy_steps(builder: str = "remote") -> List[Step]:
    if builder == "local":
        build: List[Step] = [BuildRelease(), UploadRelease()]
    else:
        build = [EnsureBuildJail(), UploadSource(), RemoteBuild()]

    return [
        EnsureAccessories(),
        DestroyStaleJail(),
        *build,
        DetermineSlot(),
        LoadSecrets(),
        CreateJail(),
        InstallRelease(),
        StartJail(),
        RunMigrations(),
        HealthCheck(),
        UpdateProxy(),
        RetirePreviousJail(),
    ]


def rollback_steps() -> List[Step]:
    return [
        ResolveRollbackTarget(),
        LoadSecrets(),
        StartJail(),
        HealthCheck(),
        UpdateProxy(),
        RetirePreviousJail(),
    ]
