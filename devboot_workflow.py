# devboot_workflow.py
# Sandbox bootstrap: container first, then network / VCS CLI / dev tools in
# parallel, then the repository clone once the VCS CLI is there.
#
#   CONTAINER=saga-dev GH_ORG=org GH_PROJECT=repo devboot run
from __future__ import annotations

import os
import subprocess

from devboot import wf, job, sh, call, retry
from devboot.retry import wait_for

CONTAINER = os.environ.get("CONTAINER", "saga-dev")
IMAGE = os.environ.get("IMAGE", "ubuntu:24.04")
GH_ORG = os.environ.get("GH_ORG", "")
GH_PROJECT = os.environ.get("GH_PROJECT", "")
FRAMEWORKS = os.environ.get("FRAMEWORKS", "node:npm:ts")

# apt/dpkg inside the container tolerates one writer at a time
APT = retry(3, backoff=5, lock=f"apt-{CONTAINER}", lock_wait=120)


def in_container(script: str) -> list[str]:
    return ["lxc", "exec", CONTAINER, "--", "bash", "-c", script]


def container_running(ctx) -> bool:
    def running() -> bool:
        out = subprocess.run(
            ["lxc", "list", "-c", "ns", "--format", "csv"],
            capture_output=True, text=True, check=False,
        ).stdout
        return any(line == f"{CONTAINER},RUNNING" for line in out.splitlines())

    return wait_for(running, attempts=30, interval=2)


def workflow():
    return wf(
        job(
            "container",
            sh("Remove old container", f"lxc delete {CONTAINER} --force || true"),
            sh("Launch", ["lxc", "launch", IMAGE, CONTAINER, "--ephemeral"], idle_timeout=120),
            call("Wait for RUNNING", container_running),
            sh("Smoke test", in_container("echo ready"), timeout=30),
            critical=True,
        ),
        job(
            "network",
            sh(
                "Install tailscale",
                in_container("command -v tailscale || (curl -fsSL https://tailscale.com/install.sh | sh)"),
                retry=APT,
            ),
            sh("Join tailnet", in_container(f"tailscale up --ssh --hostname={CONTAINER}"), timeout=90),
            needs=["container"],
            idle_timeout=60,
        ),
        job(
            "github",
            sh(
                "Install gh",
                in_container("command -v gh || (apt-get update -qq && apt-get install -y -qq gh)"),
                retry=APT,
            ),
            needs=["container"],
            idle_timeout=60,
        ),
        job(
            "devtools",
            sh(
                "Base packages",
                in_container("apt-get update -qq && apt-get install -y -qq build-essential git curl jq"),
                retry=APT,
            ),
            sh(
                "Node.js",
                in_container("command -v node || (curl -fsSL https://deb.nodesource.com/setup_lts.x | bash - "
                             "&& apt-get install -y -qq nodejs)"),
                retry=APT,
            ),
            needs=["container"],
            env={"FRAMEWORKS": FRAMEWORKS},
            idle_timeout=60,
            deadline=600,
        ),
        job(
            "repo",
            sh(
                "Clone",
                in_container(f"cd /root && (gh repo clone {GH_ORG}/{GH_PROJECT} || "
                             f"git clone https://github.com/{GH_ORG}/{GH_PROJECT}.git)"),
                retry=retry(3, backoff=5),
            ),
            needs=["github"],
            idle_timeout=60,
        ),
    )
