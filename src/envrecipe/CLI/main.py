# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""
Command Line Interface for envrecipe.
"""
import json
import logging
import sys

import click
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..BUILDERS.image_builder import ImageBuilder
from ..config import BuildSettings
from ..CONVERTERS.to_dockerfile import DockerfileConverter
from ..errors import BuildError, TransportError
from ..MANAGERS.environment_manager import EnvironmentManager
from ..PARSERS.recipe_parser import RecipeParser
from ..REGISTRY.image_reference import ImageReference
from ..REGISTRY.image_store import ImageStore
from ..REGISTRY.registry_client import RegistryClient

def _fail(error: BuildError) -> None:
    phase = error.phase or "build"
    click.echo(f"Build failed during {phase}: {error}", err=True)
    sys.exit(1)


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception()
    click.echo(f"Attempt {state.attempt_number} failed ({error}); retrying...", err=True)


@click.group()
@click.option('--log-level', default=None, help='Logging level (default from ENVRECIPE_LOG_LEVEL)')
@click.pass_context
def cli(ctx, log_level):
    """
    envrecipe - build reproducible environment images from recipes.

    Resolves a pinned base image, applies the recipe's environment and
    installs its packages, then tags the result in the local store.
    """
    ctx.ensure_object(dict)
    settings = BuildSettings()
    ctx.obj['settings'] = settings
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _registry_client(settings, ref):
    client = RegistryClient(cache_dir=str(settings.cache_dir), timeout=settings.registry_timeout)
    if settings.registry_username and settings.registry_password:
        client.set_credentials(ref.registry, settings.registry_username, settings.registry_password)
    return client


def _load_recipe(path):
    try:
        return RecipeParser().load(path)
    except BuildError as e:
        _fail(e)


@cli.command()
@click.argument('recipe', type=click.Path(exists=True, dir_okay=False))
@click.option('--tag', '-t', required=True, help='Tag to assign to the built image')
@click.option('--platform', default=None, help='Target platform, e.g. linux/amd64')
@click.option('--env-file', multiple=True, help='Extra environment variables (dotenv format)')
@click.option('--retries', default=0, show_default=True, help='Rebuild up to N times on transport errors')
@click.option('--executor', type=click.Choice(['chroot', 'host']), default=None,
              help='Build in a fresh root (chroot) or on the current system (host); '
                   'host builds leave /var/log, /var/tmp, /home and /root/.cache out of the layer')
@click.option('--keep-rootfs', is_flag=True, help='Keep the build root filesystem')
@click.pass_context
def build(ctx, recipe, tag, platform, env_file, retries, executor, keep_rootfs):
    """Build an image from a recipe."""
    settings = ctx.obj['settings']
    parsed = _load_recipe(recipe)

    extra_env = {}
    manager = EnvironmentManager()
    for path in env_file:
        try:
            extra_env.update(manager.load_env_file(path))
        except FileNotFoundError as e:
            raise click.BadParameter(str(e), param_hint='--env-file')

    builder = ImageBuilder(settings)
    retrying = Retrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=1, max=30),
        retry=retry_if_exception_type(TransportError),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        image = retrying(
            builder.build, parsed, tag,
            platform=platform,
            extra_env=extra_env,
            executor=executor,
            keep_rootfs=keep_rootfs or None,
        )
    except BuildError as e:
        _fail(e)
    except ValueError as e:
        raise click.UsageError(str(e))

    click.echo(f"Built {image.tag} ({image.id})")
    click.echo(f"Base: {image.base}")
    click.echo(f"Packages installed: {len(image.installed_packages)}")
    if image.rootfs and image.rootfs != "/":
        click.echo(f"Root filesystem kept at {image.rootfs}")


@cli.command()
@click.argument('recipe', type=click.Path(exists=True, dir_okay=False))
@click.option('--pin', is_flag=True, help='Replace the base image tag with its resolved digest')
@click.option('--platform', default=None, help='Platform used to resolve the digest')
@click.option('--out', '-o', default=None, help='Write to a file instead of stdout')
@click.pass_context
def render(ctx, recipe, pin, platform, out):
    """Render a recipe as a Dockerfile."""
    settings = ctx.obj['settings']
    parsed = _load_recipe(recipe)

    pinned = None
    if pin:
        client = _registry_client(settings, parsed.base_image)
        try:
            pinned = client.resolve(parsed.base_image, platform or settings.platform).pinned
        except BuildError as e:
            _fail(e)

    converter = DockerfileConverter(parsed)
    if out:
        converter.convert(out, pinned)
        click.echo(f"Dockerfile written to {out}")
    else:
        click.echo(converter.render(pinned), nl=False)


@cli.command()
@click.argument('image')
@click.option('--platform', default=None, help='Target platform')
@click.pass_context
def resolve(ctx, image, platform):
    """Print the digest a base image reference resolves to."""
    settings = ctx.obj['settings']
    try:
        ref = ImageReference.parse(image)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='IMAGE')
    client = _registry_client(settings, ref)
    try:
        resolved = client.resolve(ref, platform or settings.platform)
    except BuildError as e:
        _fail(e)
    click.echo(resolved.pinned.full_name)


@cli.command()
@click.pass_context
def images(ctx):
    """List tagged images."""
    store = ImageStore(str(ctx.obj['settings'].store_dir))
    click.echo(f"{'TAG':40} {'IMAGE ID':14} {'SIZE':>10}")
    click.echo("-" * 66)
    for image in store.list_images():
        short_id = image.digest.split(":", 1)[-1][:12]
        click.echo(f"{image.tag:40} {short_id:14} {store.format_size(image.size):>10}")


@cli.command()
@click.argument('tag')
@click.pass_context
def inspect(ctx, tag):
    """Show the configuration of a tagged image."""
    store = ImageStore(str(ctx.obj['settings'].store_dir))
    config = store.get_config(tag)
    if config is None:
        click.echo(f"Error: image {tag} not found.", err=True)
        sys.exit(1)
    click.echo(json.dumps(config, indent=2, sort_keys=True))


@cli.command()
@click.argument('tag')
@click.option('--prune', is_flag=True, help='Also delete blobs no longer referenced')
@click.pass_context
def rmi(ctx, tag, prune):
    """Remove an image tag."""
    store = ImageStore(str(ctx.obj['settings'].store_dir))
    if not store.remove(tag):
        click.echo(f"Error: image {tag} not found.", err=True)
        sys.exit(1)
    click.echo(f"Untagged {tag}")
    if prune:
        stats = store.prune()
        click.echo(f"Deleted {stats['removed_blobs']} blobs, freed {store.format_size(stats['freed_bytes'])}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
