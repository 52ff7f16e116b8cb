"""Docker Swarm profile for multi-node fine-tuning stacks.

The primary becomes the swarm manager; peers join as workers using the
token captured from the manager.  Every node advertises its GPU to the
swarm as a generic resource so GPU-reserving services can be placed.
Setup steps are idempotent so a re-run on a partially joined fleet
converges.

Deploy stages the local compose file and container entrypoint on the
manager, deploys the stack, waits for its container and starts the
fine-tuning script inside it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from sparkfleet.errors import ConfigError, ErrorKind
from sparkfleet.orchestration.docker import docker_exec_cmd
from sparkfleet.orchestration.runner import TARGET_PEERS, TARGET_PRIMARY, Playbook, Step
from sparkfleet.profiles.base import FleetProfile

logger = logging.getLogger(__name__)

SWARM_PORT = 2377
TOOLKIT_PACKAGE = "nvidia-container-toolkit"
DAEMON_CONFIG = "/etc/docker/daemon.json"
RUNTIME_CONFIG = "/etc/nvidia-container-runtime/config.toml"
ENTRYPOINT_FILE = "pytorch-ft-entrypoint.sh"

# doubled braces survive str.format; docker sees {{.Swarm.LocalNodeState}}
_SWARM_ACTIVE = "docker info --format '{{{{.Swarm.LocalNodeState}}}}' | grep -qx active"

# uncomment `swarm-resource = "..."` in the nvidia runtime config
_ENABLE_SWARM_RESOURCE = ("sudo -n sed -i 's/^#\\s*\\(swarm-resource\\s*=\\s*\".*\"\\)/\\1/' "
                          + RUNTIME_CONFIG)

_RESTORE_DAEMON_CONFIG = (
    "if [ -f {path}.backup ]; then sudo -n mv {path}.backup {path} && sudo -n systemctl restart docker; fi"
    .format(path=DAEMON_CONFIG)
)


def build_daemon_config() -> str:
    """``daemon.json`` body with a ``%s`` slot for the node's GPU UUID (a printf format)."""
    doc = {
        "runtimes": {
            "nvidia": {
                "path": "nvidia-container-runtime",
                "runtimeArgs": [],
            },
        },
        "default-runtime": "nvidia",
        "node-generic-resources": ["NVIDIA_GPU=%s"],
    }
    return json.dumps(doc, indent=2) + "\n"


def build_finetune_cmd(script: str, config_file: str) -> str:
    return ("bash /workspace/install-requirements && "
            "accelerate launch --config_file=%s %s" % (config_file, script))


def read_local_file(path: str) -> str | None:
    """Contents of a local file to stage remotely; None when it does not exist."""
    local = Path(path).expanduser()
    if not local.is_file():
        logger.debug("Local file %s not found; deploy will require it", local)
        return None
    try:
        return local.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(ErrorKind.CONFIG_IO_ERROR, "Could not read %s: %s" % (local, e)) from e


class SwarmProfile(FleetProfile):
    """Docker Swarm across the fleet, deploying a compose stack."""

    profile_name = "swarm"
    description = "Docker Swarm cluster running a multi-node fine-tuning stack"

    def default_params(self) -> dict[str, Any]:
        params = super().default_params()
        params.update(
            stack="finetuning-multinode",
            compose_file="docker-compose.yml",
            compose_source="docker-compose.yml",
            entrypoint_source=ENTRYPOINT_FILE,
            workdir="pytorch-fine-tune",
            container_wait=120,
            finetune_script="/workspace/Llama3_70B_LoRA_finetuning.py",
            finetune_config="/workspace/configs/config_fsdp_lora.yaml",
        )
        return params

    def derive_params(self, params: dict[str, Any]) -> None:
        params["daemon_config"] = build_daemon_config()
        params["finetune_cmd"] = build_finetune_cmd(params["finetune_script"], params["finetune_config"])
        # local files are read relative to the working directory, like a compose project
        if params.get("compose_yaml") is None:
            params["compose_yaml"] = read_local_file(params["compose_source"])
        if params.get("entrypoint_script") is None:
            params["entrypoint_script"] = read_local_file(params["entrypoint_source"])

    def setup_playbook(self) -> Playbook:
        return Playbook(
            name="swarm-setup",
            description="Advertise GPUs, initialize a swarm on the primary and join every peer",
            steps=(
                Step("check-docker", "docker ps > /dev/null"),
                Step("install-container-toolkit",
                     "dpkg -s %s > /dev/null 2>&1 || "
                     "(sudo -n apt-get update && sudo -n apt-get install -y %s)"
                     % (TOOLKIT_PACKAGE, TOOLKIT_PACKAGE),
                     best_effort=True, description="NVIDIA container toolkit"),
                Step("gpu-uuid",
                     "nvidia-smi --query-gpu=uuid --format=csv,noheader | head -n 1 | grep .",
                     capture="gpu_uuid", best_effort=True),
                Step("advertise-gpu",
                     "(sudo -n cp %s %s.backup 2> /dev/null || true) && "
                     "printf {daemon_config} {gpu_uuid} | sudo -n tee %s > /dev/null && "
                     "(%s || true) && sudo -n systemctl restart docker"
                     % (DAEMON_CONFIG, DAEMON_CONFIG, DAEMON_CONFIG, _ENABLE_SWARM_RESOURCE),
                     best_effort=True, description="GPU as a swarm generic resource"),
                Step("detect-manager-ip",
                     "ip -o -4 addr show dev {interface} | awk '{{print $4}}' | cut -d/ -f1 | head -n 1 | grep .",
                     targets=TARGET_PRIMARY, capture="manager_ip"),
                Step("swarm-init",
                     _SWARM_ACTIVE + " || docker swarm init --advertise-addr {manager_ip}",
                     targets=TARGET_PRIMARY, description="manager on the primary"),
                Step("join-token", "docker swarm join-token -q worker",
                     targets=TARGET_PRIMARY, capture="join_token"),
                Step("join-workers",
                     _SWARM_ACTIVE + " || docker swarm join --token {join_token} {manager_ip}:%d" % SWARM_PORT,
                     targets=TARGET_PEERS, description="peers join as workers"),
            ),
        )

    def deploy_playbook(self) -> Playbook:
        run_finetune = docker_exec_cmd(
            "{container_id}", "bash -c {finetune_cmd}", detach=True, env={"HF_TOKEN": "{hf_token}"})
        return Playbook(
            name="swarm-deploy",
            description="Stage and deploy the compose stack, then start fine-tuning",
            requires=("hf_token", "compose_yaml", "entrypoint_script"),
            steps=(
                Step("stage-compose",
                     "mkdir -p {workdir} && printf '%s' {compose_yaml} > {workdir}/{compose_file}",
                     targets=TARGET_PRIMARY),
                Step("stage-entrypoint",
                     "printf '%%s' {entrypoint_script} > {workdir}/%s && chmod +x {workdir}/%s"
                     % (ENTRYPOINT_FILE, ENTRYPOINT_FILE),
                     targets=TARGET_PRIMARY),
                Step("deploy-stack", "cd {workdir} && docker stack deploy -c {compose_file} {stack}",
                     targets=TARGET_PRIMARY),
                Step("find-container",
                     "for i in $(seq {container_wait}); do"
                     " id=$(docker ps -q -f name={stack} | head -n 1);"
                     ' [ -n "$id" ] && echo "$id" && exit 0; sleep 1; done; exit 1',
                     targets=TARGET_PRIMARY, capture="container_id",
                     description="wait for the stack's container"),
                Step("run-finetune", run_finetune, targets=TARGET_PRIMARY,
                     description="accelerate launch inside the container"),
            ),
        )

    def test_playbook(self) -> Playbook:
        return Playbook(
            name="swarm-test",
            description="List swarm nodes and stack tasks",
            steps=(
                Step("list-nodes", "docker node ls", targets=TARGET_PRIMARY),
                Step("stack-tasks", "docker stack ps {stack} --no-trunc", targets=TARGET_PRIMARY),
            ),
        )

    def rollback_playbook(self) -> Playbook:
        return Playbook(
            name="swarm-rollback",
            description="Remove the stack, leave the swarm and restore docker's daemon config",
            steps=(
                Step("remove-stack", "docker stack rm {stack}", targets=TARGET_PRIMARY),
                Step("leave-swarm", "docker swarm leave --force"),
                Step("restore-daemon-config", _RESTORE_DAEMON_CONFIG),
                Step("remove-workdir", "rm -rf -- {workdir}", targets=TARGET_PRIMARY),
            ),
        )
