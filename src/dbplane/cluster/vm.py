"""VM lifecycle machine.

Creates a compute instance with a reserved static address, waits until it
answers over SSH and then idles in ``wait``, reacting to start/stop/resize
signals from the node that owns it.

    start → create_vm → wait_create_vm → wait_ipv4 → wait_sshable → wait
    wait ─┬─ stop_vm → wait_vm_stopped → wait
          ├─ start_vm → wait_create_vm → …
          ├─ update_storage → resize_data_disk → wait
          ├─ update_size → wait_size_stopped → wait_create_vm → …
          └─ destroy
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from dbplane.core.errors import RemoteCommandError
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import ProcessTable, VmTable
from dbplane.core.timestamps import generate_ulid
from dbplane.execution.program import Program, step
from dbplane.execution.registry import register_program
from dbplane.remote.protocols import CloudClient
from dbplane.remote.services import Services

logger = get_logger(__name__)

DATA_DISK_RESIZE_CMD = "sudo lantern/bin/resize_data_disk"


def assemble_vm(
    session: Session,
    services: Services,
    *,
    name: str,
    location: str,
    machine_type: str,
    storage_size_gib: int,
    unix_user: str = "lantern",
) -> VmTable:
    vm = VmTable(
        id=generate_ulid(),
        name=name,
        location=location,
        machine_type=machine_type,
        storage_size_gib=storage_size_gib,
        boot_image=services.settings.boot_image,
        unix_user=unix_user,
        address_name=f"{name}-addr",
        display_state="creating",
    )
    session.add(vm)
    session.add(ProcessTable(id=vm.id, program=VmNexus.name, step="start", stack=[{}], due_at=services.clock.now()))
    session.flush()
    return vm


def swap_ip(cloud: CloudClient, vm: VmTable, other: VmTable) -> None:
    """Exchange the static addresses of two VMs.

    Safe to repeat after a crash: when the cloud already shows our address
    on the other VM, only the rows are swapped.
    """
    mine = cloud.get_static_ipv4(vm.address_name, vm.location) or {}
    theirs = cloud.get_static_ipv4(other.address_name, other.location) or {}
    if mine.get("user") != other.name:
        cloud.unassign_static_ipv4(vm.name, vm.location)
        cloud.unassign_static_ipv4(other.name, other.location)
        cloud.assign_static_ipv4(vm.name, theirs["address"], vm.location)
        cloud.assign_static_ipv4(other.name, mine["address"], other.location)
    vm.address_name, other.address_name = other.address_name, vm.address_name
    vm.host, other.host = other.host, vm.host
    logger.info("vm_addresses_swapped", vm=vm.name, other=other.name)


@register_program
class VmNexus(Program):
    name = "Vm"

    @property
    def vm(self) -> VmTable:
        return self.session.get(VmTable, self.subject_id)

    @property
    def cloud(self) -> CloudClient:
        return self.services.cloud

    def on_deadline_expired(self, target_step: str | None) -> None:
        self.vm.display_state = "failed"
        super().on_deadline_expired(target_step)

    @step
    def start(self):
        vm = self.vm
        if self.cloud.get_static_ipv4(vm.address_name, vm.location) is None:
            self.cloud.create_static_ipv4(vm.address_name, vm.location)
        self.set_deadline("wait", 10 * 60)
        self.advance("create_vm")

    @step
    def create_vm(self):
        vm = self.vm
        if self.cloud.get_vm(vm.name, vm.location) is None:
            self.cloud.create_vm(
                vm.name,
                location=vm.location,
                machine_type=vm.machine_type,
                storage_size_gib=vm.storage_size_gib,
                boot_image=vm.boot_image,
                address_name=vm.address_name,
                labels={"parent": "dbplane", "vm-id": vm.id.lower()},
            )
        self.advance("wait_create_vm")

    @step
    def wait_create_vm(self):
        vm = self.vm
        info = self.cloud.get_vm(vm.name, vm.location) or {}
        if info.get("status") != "RUNNING":
            self.sleep_and_retry(10)
        self.advance("wait_ipv4")

    @step
    def wait_ipv4(self):
        vm = self.vm
        address = self.cloud.get_static_ipv4(vm.address_name, vm.location) or {}
        if not address.get("address"):
            self.sleep_and_retry(5)
        if address.get("user") != vm.name:
            self.cloud.unassign_static_ipv4(vm.name, vm.location)
            self.cloud.assign_static_ipv4(vm.name, address["address"], vm.location)
        vm.host = address["address"]
        self.advance("wait_sshable")

    @step
    def wait_sshable(self):
        vm = self.vm
        try:
            self.services.shell_for(vm).run("echo 1")
        except RemoteCommandError:
            self.sleep_and_retry(5)
        vm.display_state = "running"
        self.advance("wait")

    @step
    def wait(self):
        if self.is_signaled("stop_vm"):
            self.advance("stop_vm")
        if self.is_signaled("start_vm"):
            self.advance("start_vm")
        if self.is_signaled("update_storage"):
            self.advance("update_storage")
        if self.is_signaled("update_size"):
            self.advance("update_size")
        self.sleep_and_retry(30)

    @step
    def stop_vm(self):
        vm = self.vm
        self.decr("stop_vm")
        vm.display_state = "stopping"
        self.cloud.stop_vm(vm.name, vm.location)
        self.advance("wait_vm_stopped")

    @step
    def wait_vm_stopped(self):
        vm = self.vm
        info = self.cloud.get_vm(vm.name, vm.location) or {}
        if info.get("status") != "TERMINATED":
            self.sleep_and_retry(5)
        vm.display_state = "stopped"
        self.advance("wait")

    @step
    def start_vm(self):
        vm = self.vm
        self.decr("start_vm")
        vm.display_state = "starting"
        self.cloud.start_vm(vm.name, vm.location)
        self.advance("wait_create_vm")

    @step
    def update_storage(self):
        vm = self.vm
        self.decr("update_storage")
        vm.display_state = "updating"
        self.cloud.resize_vm_disk(vm.name, vm.location, vm.storage_size_gib)
        self.advance("resize_data_disk")

    @step
    def resize_data_disk(self):
        vm = self.vm
        try:
            self.services.shell_for(vm).run(DATA_DISK_RESIZE_CMD)
        except RemoteCommandError:
            self.sleep_and_retry(10)
        vm.display_state = "running"
        self.advance("wait")

    @step
    def update_size(self):
        vm = self.vm
        self.decr("update_size")
        vm.display_state = "updating"
        self.cloud.stop_vm(vm.name, vm.location)
        self.advance("wait_size_stopped")

    @step
    def wait_size_stopped(self):
        vm = self.vm
        info = self.cloud.get_vm(vm.name, vm.location) or {}
        if info.get("status") != "TERMINATED":
            self.sleep_and_retry(5)
        self.cloud.update_vm_type(vm.name, vm.location, vm.machine_type)
        self.cloud.start_vm(vm.name, vm.location)
        self.advance("wait_create_vm")

    @step
    def destroy(self):
        vm = self.vm
        self.decr("destroy")
        if vm is not None:
            if self.cloud.get_vm(vm.name, vm.location) is not None:
                self.cloud.delete_vm(vm.name, vm.location)
            if self.cloud.get_static_ipv4(vm.address_name, vm.location) is not None:
                self.cloud.release_ipv4(vm.address_name, vm.location)
            self.session.delete(vm)
        self.return_("vm deleted")
