"""Checks on the CI workflow against the files it builds from."""

import shlex
from pathlib import Path

import pytest
import yaml

ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def jobs() -> dict:
  return yaml.safe_load((ROOT / ".github" / "workflows" / "ci.yaml").read_text())["jobs"]


def _runs(job: dict) -> list:
  return [step["run"] for step in job["steps"] if "run" in step]


def test_image_build_context_has_dockerfile(jobs):
  (build,) = [run for run in _runs(jobs["image"]) if run.startswith("docker build")]

  context = shlex.split(build)[-1]
  assert (ROOT / context / "Dockerfile").is_file()


def test_only_push_builds_assume_the_ci_role(jobs):
  for name, job in jobs.items():
    uses = [step.get("uses", "") for step in job["steps"]]
    if any(u.startswith("aws-actions/configure-aws-credentials") for u in uses):
      assert job["if"] == "github.event_name == 'push'", name


def test_overlay_job_updates_shipped_overlay(jobs):
  overlay = yaml.safe_load((ROOT / ".github" / "workflows" / "ci.yaml").read_text())["env"]["OVERLAY"]

  assert (ROOT / overlay).is_file()
  assert any("platform-overlay set-image" in run for run in _runs(jobs["overlay"]))
