"""Stacked DGX Spark profile: TensorRT-LLM served across directly linked nodes.

Every node runs the same long-lived TRT-LLM container; the primary holds
the OpenMPI hostfile and launches ``trtllm-serve`` through ``mpirun``,
which reaches the peers over the high-speed link.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import yaml

from sparkfleet.orchestration.docker import (
    HF_CACHE_MOUNT,
    SSH_DIR_MOUNT,
    docker_exec_cmd,
    docker_remove_cmd,
    docker_run_cmd,
    docker_running_check_cmd,
    docker_stop_cmd,
)
from sparkfleet.orchestration.runner import TARGET_PRIMARY, Playbook, Step
from sparkfleet.profiles.base import FleetProfile

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "nvidia/Qwen3-235B-A22B-FP4"
DEFAULT_PORT = 8355
DEFAULT_TP_SIZE = 2
DEFAULT_IMAGE = "nvcr.io/nvidia/tensorrt-llm/release:1.2.0rc6"
DEFAULT_CONTAINER = "trtllm-multinode"
ENTRYPOINT_URL = ("https://raw.githubusercontent.com/NVIDIA/dgx-spark-playbooks/"
                  "refs/heads/main/nvidia/trt-llm/assets/trtllm-mn-entrypoint.sh")
API_CONFIG_PATH = "/tmp/extra-llm-api-config.yml"
CONTAINER_HOSTFILE = "/etc/openmpi-hostfile"

_OMPI_ENV = {
    "UCX_NET_DEVICES": "{interface}",
    "NCCL_SOCKET_IFNAME": "{interface}",
    "OMPI_MCA_btl_tcp_if_include": "{interface}",
    "OMPI_MCA_orte_default_hostfile": CONTAINER_HOSTFILE,
    "OMPI_MCA_rmaps_ppr_n_pernode": "1",
    "OMPI_ALLOW_RUN_AS_ROOT": "1",
    "OMPI_ALLOW_RUN_AS_ROOT_CONFIRM": "1",
}


def model_cache_folder(model: str) -> str:
    """HF hub cache folder name for *model* (``models--org--name``)."""
    from huggingface_hub.file_download import repo_folder_name
    return repo_folder_name(repo_id=model, repo_type="model")


def build_api_config(free_gpu_memory_fraction: float = 0.9) -> str:
    """YAML for ``--extra_llm_api_options``."""
    doc = {
        "print_iter_log": False,
        "kv_cache_config": {
            "dtype": "auto",
            "free_gpu_memory_fraction": free_gpu_memory_fraction,
        },
        "cuda_graph_config": {
            "enable_padding": True,
        },
    }
    return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)


def build_chat_request(model: str, prompt: str, max_tokens: int = 64) -> str:
    return json.dumps({
        "model": model,
        "messages": [{"role": "user", "content": prompt}],
        "max_tokens": max_tokens,
    })


class StackedProfile(FleetProfile):
    """TRT-LLM multi-node serving on stacked DGX Sparks."""

    profile_name = "stacked"
    description = "TensorRT-LLM multi-node serving across stacked DGX Sparks"

    def default_params(self) -> dict[str, Any]:
        params = super().default_params()
        params.update(
            model=DEFAULT_MODEL,
            port=DEFAULT_PORT,
            tp_size=DEFAULT_TP_SIZE,
            image=DEFAULT_IMAGE,
            container=DEFAULT_CONTAINER,
            entrypoint_url=ENTRYPOINT_URL,
            hostfile="openmpi-hostfile",
            max_num_tokens=32768,
            max_batch_size=4,
            free_gpu_memory_fraction=0.9,
            prompt="Paris is great because",
            max_tokens=64,
        )
        return params

    def derive_params(self, params: dict[str, Any]) -> None:
        params["model_cache_dir"] = model_cache_folder(params["model"])
        params["api_config"] = build_api_config(float(params["free_gpu_memory_fraction"]))
        params["chat_request"] = build_chat_request(
            params["model"], params["prompt"], int(params["max_tokens"]))
        params["entrypoint_cmd"] = "curl -fsSL %s | sh" % params["entrypoint_url"]
        params["api_url"] = "http://localhost:%s/v1/chat/completions" % params["port"]

    def setup_playbook(self) -> Playbook:
        launch = docker_remove_cmd("{container}") + "; " + docker_run_cmd(
            image="{image}",
            command="sh -c {entrypoint_cmd}",
            container_name="{container}",
            env=_OMPI_ENV,
            volumes=[HF_CACHE_MOUNT, SSH_DIR_MOUNT],
            devices=["/dev/infiniband:/dev/infiniband"],
        )
        return Playbook(
            name="stacked-setup",
            description="Start TRT-LLM containers on every node and distribute the MPI hostfile",
            steps=(
                Step("check-docker", "docker ps > /dev/null",
                     description="docker usable without sudo"),
                Step("detect-node-ip",
                     "ip -o -4 addr show dev {interface} | awk '{{print $4}}' | cut -d/ -f1 | head -n 1 | grep .",
                     capture="node_ip", description="IP of the high-speed interface"),
                Step("write-hostfile", "printf '%s\\n' {node_ip_all} > {hostfile}",
                     targets=TARGET_PRIMARY, description="OpenMPI hostfile, primary first"),
                Step("start-container", launch,
                     description="launch TRT-LLM container"),
                Step("copy-hostfile",
                     "docker cp {hostfile} {container}:%s" % CONTAINER_HOSTFILE,
                     targets=TARGET_PRIMARY),
                Step("verify-container", docker_running_check_cmd("{container}"),
                     description="container is running"),
            ),
        )

    def deploy_playbook(self) -> Playbook:
        token_env = {"HF_TOKEN": "{hf_token}"}
        write_config = "printf '%s' {api_config} | " + docker_exec_cmd(
            "{container}", "tee %s > /dev/null" % API_CONFIG_PATH, interactive=True)
        download = docker_exec_cmd(
            "{container}", "mpirun -x HF_TOKEN hf download {model}", env=token_env)
        serve = docker_exec_cmd(
            "{container}",
            "mpirun -x HF_TOKEN trtllm-llmapi-launch trtllm-serve {model}"
            " --tp_size {tp_size} --backend pytorch"
            " --max_num_tokens {max_num_tokens} --max_batch_size {max_batch_size}"
            " --extra_llm_api_options %s --port {port}" % API_CONFIG_PATH,
            detach=True,
            env=token_env,
        )
        return Playbook(
            name="stacked-deploy",
            description="Download the model on every node and start trtllm-serve",
            requires=("hf_token",),
            steps=(
                Step("write-api-config", write_config, targets=TARGET_PRIMARY),
                Step("download-model", download, targets=TARGET_PRIMARY,
                     description="hf download on every MPI rank"),
                Step("serve-model", serve, targets=TARGET_PRIMARY,
                     description="trtllm-serve on port {port}"),
            ),
        )

    def test_playbook(self) -> Playbook:
        return Playbook(
            name="stacked-test",
            description="Send one chat completion to the OpenAI-compatible endpoint",
            steps=(
                Step("chat-completion",
                     "curl -sf {api_url} -H 'Content-Type: application/json' -d {chat_request}",
                     targets=TARGET_PRIMARY, timeout=300),
            ),
        )

    def rollback_playbook(self) -> Playbook:
        return Playbook(
            name="stacked-rollback",
            description="Stop containers, remove downloaded weights and the hostfile",
            steps=(
                Step("stop-container", docker_stop_cmd("{container}")),
                Step("remove-model-cache", 'rm -rf -- "$HOME/.cache/huggingface/hub/"{model_cache_dir}'),
                Step("remove-hostfile", "rm -f -- {hostfile}", targets=TARGET_PRIMARY),
            ),
        )
