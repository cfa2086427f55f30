"""Image tag updates for Kustomize overlays.

CI pushes an image tagged with the commit SHA, then runs

  platform-overlay set-image --file deploy/overlays/dev/kustomization.yaml \\
      --image app --new-name <registry url> --tag <sha>

and proposes the resulting diff as a pull request. Argo CD picks the change up
once it is merged.

The file is rewritten with `yaml.safe_dump`, so comments in an overlay do not
survive a tag update. Keep explanations in the base manifests instead.
"""

from pathlib import Path
from typing import Optional

import click
import yaml


class OverlayError(Exception):
  """The overlay file cannot be read or is not a kustomization."""


def load_kustomization(path: Path) -> dict:
  if not path.is_file():
    raise OverlayError(f"{path} does not exist")
  try:
    document = yaml.safe_load(path.read_text())
  except yaml.YAMLError as e:
    raise OverlayError(f"{path} is not valid YAML: {e}") from e
  if not isinstance(document, dict):
    raise OverlayError(f"{path} is not a kustomization mapping")
  images = document.get("images")
  if images is not None and not isinstance(images, list):
    raise OverlayError(f"{path}: 'images' must be a list")
  return document


def set_image_tag(path: Path, image: str, new_tag: str, new_name: Optional[str] = None) -> bool:
  """Point `image` at `new_tag` (and optionally `new_name`).

  Adds the images entry when the overlay has none for `image`. Returns True
  when the file was rewritten, False when it already had these values.
  """
  path = Path(path)
  if not new_tag:
    raise OverlayError("new tag must not be empty")
  document = load_kustomization(path)
  images = document.get("images") or []  # An empty `images:` key loads as None
  document["images"] = images

  entry = next((i for i in images if isinstance(i, dict) and i.get("name") == image), None)
  if entry is None:
    entry = {"name": image}
    images.append(entry)

  wanted = {"newTag": str(new_tag)}
  if new_name:
    wanted["newName"] = new_name
  if all(entry.get(key) == value for key, value in wanted.items()):
    return False

  entry.update(wanted)
  path.write_text(yaml.safe_dump(document, sort_keys=False, default_flow_style=False))
  return True


@click.group()
def cli():
  """Maintain Kustomize overlays from CI."""


@cli.command("set-image")
@click.option("--file", "file_", required=True, type=click.Path(dir_okay=False, path_type=Path),
              help="Path to kustomization.yaml")
@click.option("--image", required=True, help="Image name as referenced by the manifests")
@click.option("--tag", required=True, help="New image tag, usually the commit SHA")
@click.option("--new-name", default=None, help="Registry URL to substitute for the image name")
def set_image(file_: Path, image: str, tag: str, new_name: Optional[str]):
  """Set the image tag in a kustomization overlay."""
  try:
    changed = set_image_tag(file_, image, tag, new_name=new_name)
  except OverlayError as e:
    click.secho(f"error: {e}", fg="red", err=True)
    raise SystemExit(1)

  if changed:
    click.echo(f"{file_}: {image} -> {new_name or image}:{tag}")
  else:
    click.echo(f"{file_}: {image} already at {tag}")


if __name__ == "__main__":
  cli()
