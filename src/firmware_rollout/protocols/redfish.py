"""Redfish (DMTF) client for iDRAC-class controllers."""

from typing import Any, Dict, Tuple

from firmware_rollout.exceptions import ProtocolExecutionError
from firmware_rollout.gap_analyzer import major_version
from firmware_rollout.models import (
    HealthCheck, HealthGateResult, HealthStatus, ManagementProtocol, UpdateStep
)
from firmware_rollout.protocols.base import HttpProtocolClient, ManagementTarget, matches_component


UPDATE_SERVICE = "/redfish/v1/UpdateService"
SIMPLE_UPDATE = "/redfish/v1/UpdateService/Actions/UpdateService.SimpleUpdate"
FIRMWARE_INVENTORY = "/redfish/v1/UpdateService/FirmwareInventory"
SYSTEM = "/redfish/v1/Systems/System.Embedded.1"
SYSTEM_RESET = "/redfish/v1/Systems/System.Embedded.1/Actions/ComputerSystem.Reset"
MANAGER = "/redfish/v1/Managers/iDRAC.Embedded.1"
CHASSIS_POWER = "/redfish/v1/Chassis/System.Embedded.1/Power"
CHASSIS_THERMAL = "/redfish/v1/Chassis/System.Embedded.1/Thermal"
STORAGE = "/redfish/v1/Systems/System.Embedded.1/Storage"

# Task states after which the image is on the controller
STAGED_STATES = {"downloaded", "scheduled", "pending", "running", "completed", "starting"}
# Task states after which the firmware is installed or waits for a reboot
APPLIED_STATES = {"completed", "scheduled", "pending"}
FAILED_STATES = {"exception", "killed", "cancelled", "failed", "completedwitherrors"}

# Share of the critical threshold above which a temperature is a warning
THERMAL_WARNING_RATIO = 0.9


def dell_generation(controller_version: str) -> str:
    """PowerEdge generation implied by an iDRAC firmware version."""
    major = major_version(controller_version or "")
    if major is None:
        return "unknown"
    if major <= 2:
        return "11G"
    generations = {3: "12G", 4: "13G", 5: "14G", 6: "15G"}
    return generations.get(major, "16G")


def component_id(name: str) -> str:
    """Identifier of a sensor or fan derived from its display name."""
    return "_".join(name.lower().split())


def task_state(task: Dict[str, Any]) -> str:
    """Normalized state of a Redfish task or Dell job resource."""
    return str(task.get("TaskState") or task.get("JobState") or "").replace(" ", "").lower()


class RedfishClient(HttpProtocolClient):
    """Firmware updates through UpdateService.SimpleUpdate."""

    protocol = ManagementProtocol.REDFISH

    def _probe(self, target: ManagementTarget) -> Tuple[str, bool]:
        service = self.get_json(target, UPDATE_SERVICE, "probe")
        actions = service.get("Actions", {})
        update_capable = "#UpdateService.SimpleUpdate" in actions

        details = "UpdateService available"
        try:
            manager = self.get_json(target, MANAGER, "probe")
            version = manager.get("FirmwareVersion", "")
            details = f"iDRAC {version} ({dell_generation(version)})"
        except ProtocolExecutionError as e:
            self.logger.debug(f"Cannot read manager details of {target.host_id}: {e}")
        return details, update_capable

    def _task(self, target: ManagementTarget, handle: str, operation: str) -> Dict[str, Any]:
        task = self.get_json(target, handle, operation)
        state = task_state(task)
        if state in FAILED_STATES:
            messages = "; ".join(m.get("Message", "") for m in task.get("Messages", []) if m.get("Message"))
            raise self.error(operation, f"task {handle} ended in {state}: {messages}", recoverable=False)
        return task

    def transfer(self, target: ManagementTarget, step: UpdateStep) -> str:
        if not step.image_uri:
            raise self.error("transfer", f"no image URI for {step.component_type} {step.to_version}",
                             recoverable=False)

        response = self.request(
            "POST", target, SIMPLE_UPDATE, "transfer",
            json={"ImageURI": step.image_uri, "@Redfish.OperationApplyTime": "Immediate"},
        )
        handle = response.headers.get("Location", "")
        if not handle:
            raise self.error("transfer", "SimpleUpdate returned no task location")

        self.logger.info(f"{target.host_id}: staging {step.image_uri} as {handle}")
        self.wait_until(
            "transfer",
            lambda: task_state(self._task(target, handle, "transfer")) in STAGED_STATES,
            self.task_timeout,
        )
        return handle

    def apply(self, target: ManagementTarget, step: UpdateStep, handle: str) -> None:
        self.wait_until(
            "apply",
            lambda: task_state(self._task(target, handle, "apply")) in APPLIED_STATES,
            self.task_timeout,
        )

    def abort(self, target: ManagementTarget, handle: str) -> None:
        self.request("DELETE", target, handle, "abort")

    def reboot(self, target: ManagementTarget) -> None:
        self.request("POST", target, SYSTEM_RESET, "reboot", json={"ResetType": "ForceRestart"})
        # Give the controller time to register the reset before polling
        self.sleep(self.poll_interval)
        self.wait_until(
            "reboot",
            lambda: self.get_json(target, SYSTEM, "reboot").get("PowerState") == "On",
            self.reboot_timeout,
            tolerate_errors=True,
        )

    def get_firmware_version(self, target: ManagementTarget, component_type: str) -> str:
        inventory = self.get_json(target, FIRMWARE_INVENTORY, "inventory")
        for member in inventory.get("Members", []):
            uri = member.get("@odata.id", "")
            # Dell lists previous and available images next to installed ones
            if "/Installed-" not in uri and "/Current-" not in uri:
                continue
            item = self.get_json(target, uri, "inventory")
            if matches_component(component_type, item.get("Name", "")):
                return str(item.get("Version", ""))
        raise self.error("inventory", f"{component_type} not found in firmware inventory",
                         recoverable=False)

    def check_health(self, target: ManagementTarget) -> bool:
        system = self.get_json(target, SYSTEM, "health")
        health = system.get("Status", {}).get("Health")
        return system.get("PowerState") == "On" and health in ("OK", None)

    def preflight(self, target: ManagementTarget) -> HealthGateResult:
        """
        Check power, thermal and storage subsystems before updating.

        A critical power supply, fan, temperature sensor, storage
        controller or drive blocks the update; a host that is not powered
        on blocks it too. A subsystem that cannot be read is reported as
        unknown without blocking.

        Raises:
            ProtocolExecutionError: If the system resource cannot be read
        """
        result = HealthGateResult()
        power_state = self.get_json(target, SYSTEM, "preflight").get("PowerState")
        powered_on = power_state == "On"
        result.add("power", "system_power", "OK" if powered_on else "Critical",
                   f"System power state: {power_state or 'Unknown'}", blocking=not powered_on)

        for category, check in (
            ("power", self._check_power_supplies),
            ("thermal", self._check_thermal),
            ("storage", self._check_storage),
        ):
            try:
                check(target, result)
            except ProtocolExecutionError as e:
                result.checks.append(HealthCheck(
                    category, f"{category}_check", HealthStatus.UNKNOWN.value,
                    f"{category.capitalize()} check failed: {e.reason}",
                ))

        self.logger.debug(
            f"{target.host_id}: health gate {'passed' if result.passed else 'blocked'} "
            f"({len(result.checks)} checks, {len(result.warnings)} warning(s))"
        )
        return result

    def _check_power_supplies(self, target: ManagementTarget, result: HealthGateResult) -> None:
        power = self.get_json(target, CHASSIS_POWER, "preflight")
        for index, psu in enumerate(power.get("PowerSupplies", []), start=1):
            health = psu.get("Status", {}).get("Health")
            result.add("power", f"power_supply_{index}", health,
                       f"Power Supply {index}: {health or 'Unknown'}")

    def _check_thermal(self, target: ManagementTarget, result: HealthGateResult) -> None:
        thermal = self.get_json(target, CHASSIS_THERMAL, "preflight")
        for sensor in thermal.get("Temperatures", []):
            name, reading = sensor.get("Name"), sensor.get("ReadingCelsius")
            if not name or reading is None:
                continue
            health = sensor.get("Status", {}).get("Health")
            threshold = sensor.get("UpperThresholdCritical")
            if health == "Critical" or (threshold and reading > threshold):
                health = "Critical"
            elif health == "Warning" or (threshold and reading > threshold * THERMAL_WARNING_RATIO):
                health = "Warning"
            else:
                health = "OK"
            result.add("thermal", component_id(name), health, f"{name}: {reading} C")

        for fan in thermal.get("Fans", []):
            name = fan.get("Name")
            if not name:
                continue
            health = fan.get("Status", {}).get("Health")
            rpm = fan.get("Reading")
            result.add("thermal", component_id(name), health,
                       f"{name}: {health or 'Unknown'}" + (f" ({rpm} RPM)" if rpm else ""))

    def _check_storage(self, target: ManagementTarget, result: HealthGateResult) -> None:
        storage = self.get_json(target, STORAGE, "preflight")
        for member in storage.get("Members", []):
            controller = self.get_json(target, member["@odata.id"], "preflight")
            controller_id = controller.get("Id", "storage_controller")
            health = controller.get("Status", {}).get("Health")
            result.add("storage", controller_id, health,
                       f"Storage Controller {controller_id}: {health or 'Unknown'}")
            for drive_ref in controller.get("Drives", []):
                drive = self.get_json(target, drive_ref["@odata.id"], "preflight")
                health = drive.get("Status", {}).get("Health")
                result.add("storage", f"drive_{drive.get('Id', '')}", health,
                           f"Drive {drive.get('Id', '')}: {health or 'Unknown'}")
