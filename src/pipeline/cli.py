"""Deployment Pipeline CLI.

Command-line interface for running the deployment pipeline, or individual
stages of it, from CI.
"""

from pathlib import Path
from typing import Any, Callable, TypeVar

import click
import structlog

from src.common.config import Settings, get_settings
from src.common.errors import DeploymentError
from src.common.logging import setup_logging
from src.common.metrics import get_metrics_client
from src.pipeline.controller import PipelineController

logger = structlog.get_logger()

T = TypeVar("T")


def build_settings(base: Settings, **overrides: Any) -> Settings:
    """Apply CLI overrides on top of environment settings."""
    update = {key: value for key, value in overrides.items() if value is not None}
    return base.model_copy(update=update)


def build_controller(settings: Settings) -> PipelineController:
    return PipelineController(settings, metrics=get_metrics_client())


def run_stage(stage: str, func: Callable[[], T]) -> T:
    """Run a stage, turning fatal pipeline errors into a non-zero exit."""
    try:
        return func()
    except DeploymentError as e:
        logger.error("Pipeline failed", stage=e.stage, error=str(e))
        raise click.ClickException(str(e)) from e
    except (ValueError, FileNotFoundError) as e:
        logger.error("Invalid pipeline input", stage=stage, error=str(e))
        raise click.ClickException(str(e)) from e


manifest_dir_option = click.option(
    "--manifest-dir",
    "-m",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory with Kubernetes manifests",
)
region_option = click.option("--region", help="AWS region")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Deployment pipeline: backend bootstrap, image publish, exposure and rollout."""
    settings = get_settings()
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        format_type="console" if verbose else settings.log_format,
    )


@cli.command()
@manifest_dir_option
@region_option
@click.option("--revision", help="Source revision (commit SHA)")
@click.option("--build-number", type=int, help="Build counter used when no revision is available")
@click.option("--no-scan", is_flag=True, help="Skip the informational image scan")
@click.pass_context
def run(
    ctx: click.Context,
    manifest_dir: Path | None,
    region: str | None,
    revision: str | None,
    build_number: int | None,
    no_scan: bool,
) -> None:
    """Run the full pipeline."""
    settings = build_settings(
        ctx.obj["settings"],
        manifest_dir=manifest_dir,
        aws_region=region,
        revision=revision,
        build_number=build_number,
        scan_enabled=False if no_scan else None,
    )
    result = run_stage("pipeline", build_controller(settings).run)

    click.echo(f"Image: {result.image}")
    for resource in result.backend:
        click.echo(f"Backend {resource.kind.value}: {resource.name} ({resource.state.value})")
    if result.endpoint is not None:
        if result.endpoint.resolved:
            click.echo(f"Endpoint ({result.endpoint.kind.value}): {result.endpoint.hostname}")
        else:
            click.echo("Endpoint: unresolved (manual intervention required)")
    if result.rollout is not None:
        click.echo(f"Rollout: {result.rollout.outcome.value}")


@cli.command()
@region_option
@click.pass_context
def bootstrap(ctx: click.Context, region: str | None) -> None:
    """Ensure the Terraform state bucket and lock table exist."""
    settings = build_settings(ctx.obj["settings"], aws_region=region)
    resources = run_stage("provision", build_controller(settings).bootstrap)

    for resource in resources:
        click.echo(f"{resource.kind.value}: {resource.name} ({resource.state.value})")


@cli.command()
@region_option
@click.option("--revision", help="Source revision (commit SHA)")
@click.option("--build-number", type=int, help="Build counter used when no revision is available")
@click.option("--no-scan", is_flag=True, help="Skip the informational image scan")
@click.pass_context
def publish(
    ctx: click.Context,
    region: str | None,
    revision: str | None,
    build_number: int | None,
    no_scan: bool,
) -> None:
    """Build and push the image."""
    settings = build_settings(
        ctx.obj["settings"],
        aws_region=region,
        revision=revision,
        build_number=build_number,
        scan_enabled=False if no_scan else None,
    )
    controller = build_controller(settings)

    def stage() -> str:
        return controller.publisher().publish(controller.resolve_identity())

    click.echo(run_stage("publish", stage))


@cli.command()
@manifest_dir_option
@click.option("--deadline", type=float, help="Seconds to wait per load balancer type")
@click.pass_context
def expose(ctx: click.Context, manifest_dir: Path | None, deadline: float | None) -> None:
    """Apply Service manifests and wait for an external address."""
    settings = build_settings(ctx.obj["settings"], manifest_dir=manifest_dir, exposure_deadline=deadline)
    controller = build_controller(settings)

    endpoint = run_stage(
        "expose", lambda: controller.exposure_manager().expose_service(controller.manifest_set())
    )
    if endpoint.resolved:
        click.echo(endpoint.hostname)
    else:
        click.echo("unresolved")


@cli.command()
@manifest_dir_option
@click.option("--image", required=True, help="Image reference to roll out")
@click.option("--timeout", type=float, help="Seconds to wait for convergence")
@click.pass_context
def rollout(ctx: click.Context, manifest_dir: Path | None, image: str, timeout: float | None) -> None:
    """Update the Deployment image and verify the rollout."""
    settings = build_settings(ctx.obj["settings"], manifest_dir=manifest_dir, rollout_timeout=timeout)
    controller = build_controller(settings)

    def stage():
        workload = controller.workload_ref(controller.manifest_set())
        if workload is None:
            raise ValueError("Workload manifest with a Deployment is required for rollout")
        return controller.rollout_verifier().rollout(workload, image, timeout=settings.rollout_timeout)

    attempt = run_stage("rollout", stage)
    click.echo(attempt.outcome.value)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo("Deployment Pipeline CLI v0.1.0")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
