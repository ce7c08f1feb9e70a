"""
Data-volume lifecycle: Unattached -> Attached -> Formatted -> Mounted.

Every boot recomputes the state from the device itself, so each step is
skipped when it is already done (an existing filesystem is never reformatted).
Exhausting a step's retry budget is fatal: a node without a writable data
volume must never advertise itself.
"""

from __future__ import annotations

import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import bittensor as bt
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from avalanched.errors import ResourceUnavailableError, TransientError, VolumeCommandError
from avalanched.utils.retry import SYSTEM_CLOCK, Backoff, CancelToken, Clock, retry_call


class VolumeState(str, Enum):
    UNATTACHED = "unattached"
    ATTACHED = "attached"
    FORMATTED = "formatted"
    MOUNTED = "mounted"


class BlockDevice(ABC):
    """Host capability over one block device."""

    @abstractmethod
    def is_attached(self, device: str) -> bool: ...

    @abstractmethod
    def is_formatted(self, device: str) -> bool: ...

    @abstractmethod
    def format(self, device: str, fstype: str) -> None: ...

    @abstractmethod
    def is_mounted(self, device: str, mount_point: str) -> bool: ...

    @abstractmethod
    def mount(self, device: str, mount_point: str, fstype: str) -> None: ...

    @abstractmethod
    def persist_mount(self, device: str, mount_point: str, fstype: str) -> None: ...


def _run(cmd: List[str]) -> subprocess.CompletedProcess:
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise VolumeCommandError(f"{cmd[0]} could not be executed: {e}") from e
    return proc


def fstab_line(device: str, mount_point: str, fstype: str) -> str:
    return f"{device} {mount_point} {fstype} defaults,nofail 0 2"


class LinuxBlockDevice(BlockDevice):
    def __init__(self, *, fstab_path: str = "/etc/fstab", mounts_path: str = "/proc/mounts") -> None:
        self.fstab_path = fstab_path
        self.mounts_path = mounts_path

    def is_attached(self, device: str) -> bool:
        return os.path.exists(device)

    def is_formatted(self, device: str) -> bool:
        # blkid exits 2 when the device carries no recognisable filesystem.
        proc = _run(["blkid", "-o", "value", "-s", "TYPE", device])
        if proc.returncode == 0:
            return bool(proc.stdout.strip())
        if proc.returncode == 2:
            return False
        raise VolumeCommandError(f"blkid {device} failed ({proc.returncode}): {proc.stderr.strip()}")

    def format(self, device: str, fstype: str) -> None:
        proc = _run(["mkfs", "-t", fstype, device])
        if proc.returncode != 0:
            raise VolumeCommandError(f"mkfs {device} failed ({proc.returncode}): {proc.stderr.strip()}")

    def is_mounted(self, device: str, mount_point: str) -> bool:
        try:
            with open(self.mounts_path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            raise VolumeCommandError(f"cannot read {self.mounts_path}: {e}") from e
        target = os.path.normpath(mount_point)
        for line in lines:
            parts = line.split()
            if len(parts) >= 2 and parts[0] == device and os.path.normpath(parts[1]) == target:
                return True
        return False

    def mount(self, device: str, mount_point: str, fstype: str) -> None:
        try:
            os.makedirs(mount_point, exist_ok=True)
        except OSError as e:
            raise VolumeCommandError(f"cannot create {mount_point}: {e}") from e
        proc = _run(["mount", "-t", fstype, device, mount_point])
        if proc.returncode != 0:
            raise VolumeCommandError(f"mount {device} {mount_point} failed ({proc.returncode}): {proc.stderr.strip()}")

    def persist_mount(self, device: str, mount_point: str, fstype: str) -> None:
        try:
            text = ""
            if os.path.exists(self.fstab_path):
                with open(self.fstab_path, "r", encoding="utf-8") as f:
                    text = f.read()
            for line in text.splitlines():
                parts = line.split()
                if line.lstrip().startswith("#") or len(parts) < 2:
                    continue
                if parts[0] == device and parts[1] == mount_point:
                    return
            with open(self.fstab_path, "a", encoding="utf-8") as f:
                if text and not text.endswith("\n"):
                    f.write("\n")
                f.write(fstab_line(device, mount_point, fstype) + "\n")
        except OSError as e:
            raise VolumeCommandError(f"cannot update {self.fstab_path}: {e}") from e


class Ec2AttachmentProbe:
    """
    Attachment through EC2 rather than device presence.

    A volume counts as attached once `describe_volumes` filtered by this
    instance and EBS device name reports an attachment in state "attached".
    """

    def __init__(self, instance_id: str, ebs_device_name: str, *, region: Optional[str] = None, client=None) -> None:
        self.instance_id = instance_id
        self.ebs_device_name = ebs_device_name
        self._client = client if client is not None else boto3.client("ec2", region_name=region)

    def is_attached(self) -> bool:
        try:
            resp = self._client.describe_volumes(
                Filters=[
                    {"Name": "attachment.instance-id", "Values": [self.instance_id]},
                    {"Name": "attachment.device", "Values": [self.ebs_device_name]},
                ]
            )
        except (ClientError, BotoCoreError) as e:
            raise VolumeCommandError(f"describe_volumes failed: {e}") from e
        for vol in resp.get("Volumes", []) or []:
            for att in vol.get("Attachments", []) or []:
                if att.get("State") == "attached":
                    return True
        return False


@dataclass(frozen=True)
class MountedVolume:
    device: str
    mount_point: str
    fstype: str
    # True when this boot created the filesystem.
    formatted_now: bool


class VolumeManager:
    def __init__(
        self,
        block: BlockDevice,
        *,
        device: str,
        mount_point: str,
        fstype: str = "ext4",
        attach_attempts: int = 60,
        attach_delay_s: float = 5.0,
        step_attempts: int = 3,
        probe: Optional[Ec2AttachmentProbe] = None,
        clock: Clock = SYSTEM_CLOCK,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.block = block
        self.device = device
        self.mount_point = mount_point
        self.fstype = fstype
        self.attach_attempts = attach_attempts
        self.attach_delay_s = attach_delay_s
        self.step_attempts = step_attempts
        self.probe = probe
        self.clock = clock
        self.cancel = cancel
        self.state = VolumeState.UNATTACHED

    def _step(self, fn, describe: str, attempts: int):
        try:
            return retry_call(
                fn,
                attempts=attempts,
                backoff=Backoff.fixed(self.attach_delay_s),
                clock=self.clock,
                cancel=self.cancel,
                retry_on=(TransientError,),
                describe=describe,
            )
        except TransientError as e:
            raise ResourceUnavailableError(f"{describe} failed: {e}", stage="volume") from e

    def _wait_attached(self) -> None:
        def _check() -> None:
            attached = self.probe.is_attached() if self.probe is not None else True
            if not (attached and self.block.is_attached(self.device)):
                raise VolumeCommandError(f"{self.device} not attached yet")

        self._step(_check, f"wait for {self.device}", self.attach_attempts)

    def ensure_mounted(self) -> MountedVolume:
        bt.logging.info(f"Ensuring {self.device} is mounted at {self.mount_point}")
        self._wait_attached()
        self.state = VolumeState.ATTACHED

        formatted_now = False
        if self._step(lambda: self.block.is_mounted(self.device, self.mount_point), "check mounts", self.step_attempts):
            bt.logging.info(f"{self.device} already mounted at {self.mount_point}")
            self.state = VolumeState.MOUNTED
        else:
            if self._step(lambda: self.block.is_formatted(self.device), f"probe {self.device}", self.step_attempts):
                bt.logging.info(f"{self.device} already formatted; skipping mkfs")
            else:
                bt.logging.info(f"Formatting {self.device} as {self.fstype}")
                self._step(lambda: self.block.format(self.device, self.fstype), f"format {self.device}", self.step_attempts)
                formatted_now = True
            self.state = VolumeState.FORMATTED
            self._step(
                lambda: self.block.mount(self.device, self.mount_point, self.fstype),
                f"mount {self.device}",
                self.step_attempts,
            )
            self.state = VolumeState.MOUNTED

        self._step(
            lambda: self.block.persist_mount(self.device, self.mount_point, self.fstype),
            "persist mount",
            self.step_attempts,
        )
        bt.logging.success(f"Data volume ready: {self.device} -> {self.mount_point}")
        return MountedVolume(self.device, self.mount_point, self.fstype, formatted_now)
