"""WS-Management (SOAP) client for Dell Lifecycle Controller."""

import uuid
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple
from xml.sax.saxutils import escape

from firmware_rollout.models import ManagementProtocol, UpdateStep
from firmware_rollout.protocols.base import HttpProtocolClient, ManagementTarget, matches_component


WSMAN_PATH = "/wsman"
DCIM = "http://schemas.dell.com/wbem/wscim/1/cim-schema/2"
SOFTWARE_INSTALLATION = f"{DCIM}/DCIM_SoftwareInstallationService"
SOFTWARE_IDENTITY = f"{DCIM}/DCIM_SoftwareIdentity"
LIFECYCLE_JOB = f"{DCIM}/DCIM_LifecycleJob"
JOB_SERVICE = f"{DCIM}/DCIM_JobService"
POWER_SERVICE = f"{DCIM}/DCIM_CSPowerManagementService"
SYSTEM_VIEW = f"{DCIM}/DCIM_SystemView"

ACTION_IDENTIFY = "http://schemas.dmtf.org/wbem/wsman/identity/1/Identify"
ACTION_GET = "http://schemas.xmlsoap.org/ws/2004/09/transfer/Get"
ACTION_ENUMERATE = "http://schemas.xmlsoap.org/ws/2004/09/enumeration/Enumerate"

SELECTORS_INSTALL = {
    "CreationClassName": "DCIM_SoftwareInstallationService",
    "SystemCreationClassName": "DCIM_ComputerSystem",
    "SystemName": "IDRAC:ID",
    "Name": "SoftwareUpdate",
}
SELECTORS_JOB_SERVICE = {
    "CreationClassName": "DCIM_JobService",
    "SystemCreationClassName": "DCIM_ComputerSystem",
    "SystemName": "Idrac",
    "Name": "JobService",
}
SELECTORS_POWER = {
    "CreationClassName": "DCIM_CSPowerManagementService",
    "SystemCreationClassName": "DCIM_SPComputerSystem",
    "SystemName": "systemmc",
    "Name": "pwrmgtsvc:1",
}

STAGED_JOB_STATES = {"downloaded", "scheduled", "running", "completed"}
APPLIED_JOB_STATES = {"completed", "scheduled"}
FAILED_JOB_STATES = {"failed", "completedwitherrors"}

# PowerState value for a power cycle in RequestPowerStateChange
POWER_CYCLE = "5"


def envelope(action: str, resource_uri: str, body: str,
             selectors: Optional[Dict[str, str]] = None) -> str:
    """Build a WS-Management SOAP envelope."""
    selector_xml = ""
    if selectors:
        items = "".join(
            f'<wsman:Selector Name="{name}">{escape(value)}</wsman:Selector>'
            for name, value in selectors.items()
        )
        selector_xml = f"<wsman:SelectorSet>{items}</wsman:SelectorSet>"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope" '
        'xmlns:wsa="http://schemas.xmlsoap.org/ws/2004/08/addressing" '
        'xmlns:wsman="http://schemas.dmtf.org/wbem/wsman/1/wsman.xsd">'
        "<s:Header>"
        f"<wsa:Action>{action}</wsa:Action>"
        f"<wsa:MessageID>uuid:{uuid.uuid4()}</wsa:MessageID>"
        "<wsa:To>wsman</wsa:To>"
        f"<wsman:ResourceURI>{resource_uri}</wsman:ResourceURI>"
        f"{selector_xml}"
        "</s:Header>"
        f"<s:Body>{body}</s:Body>"
        "</s:Envelope>"
    )


def find_text(root: ET.Element, tag: str, default: str = "") -> str:
    """Text of the first element named ``tag`` in any namespace."""
    element = root.find(f".//{{*}}{tag}")
    if element is None or element.text is None:
        return default
    return element.text.strip()


class WsmanClient(HttpProtocolClient):
    """Firmware updates through DCIM_SoftwareInstallationService.InstallFromURI."""

    protocol = ManagementProtocol.WSMAN

    def invoke(self, target: ManagementTarget, action: str, resource_uri: str, body: str,
               operation: str, selectors: Optional[Dict[str, str]] = None) -> ET.Element:
        """Send a SOAP request and return the parsed response."""
        response = self.request(
            "POST", target, WSMAN_PATH, operation,
            data=envelope(action, resource_uri, body, selectors),
            headers={"Content-Type": "application/soap+xml;charset=UTF-8"},
        )
        try:
            root = ET.fromstring(response.text)
        except ET.ParseError as e:
            raise self.error(operation, f"invalid SOAP response: {e}") from e

        fault = root.find(".//{*}Fault")
        if fault is not None:
            raise self.error(operation, f"SOAP fault: {find_text(fault, 'Text') or find_text(fault, 'Value')}")
        return root

    def _call(self, target: ManagementTarget, resource_uri: str, method: str, params: str,
              operation: str, selectors: Dict[str, str]) -> ET.Element:
        body = f'<p:{method}_INPUT xmlns:p="{resource_uri}">{params}</p:{method}_INPUT>'
        root = self.invoke(target, f"{resource_uri}/{method}", resource_uri, body, operation, selectors)
        return_value = find_text(root, "ReturnValue", "0")
        # 0 = completed, 4096 = job created
        if return_value not in ("0", "4096"):
            raise self.error(
                operation,
                f"{method} returned {return_value}: {find_text(root, 'Message')}",
                recoverable=False,
            )
        return root

    def _probe(self, target: ManagementTarget) -> Tuple[str, bool]:
        root = self.invoke(target, ACTION_IDENTIFY, ACTION_IDENTIFY, "<wsmid:Identify xmlns:wsmid="
                           '"http://schemas.dmtf.org/wbem/wsman/identity/1/wsmanidentity.xsd"/>', "probe")
        vendor = find_text(root, "ProductVendor")
        version = find_text(root, "ProductVersion")
        return f"{vendor} {version}".strip(), True

    def _job_state(self, target: ManagementTarget, job_id: str, operation: str) -> str:
        root = self.invoke(target, ACTION_GET, LIFECYCLE_JOB, "", operation, {"InstanceID": job_id})
        state = find_text(root, "JobStatus").replace(" ", "").lower()
        if state in FAILED_JOB_STATES:
            raise self.error(
                operation,
                f"job {job_id} {state}: {find_text(root, 'Message')}",
                recoverable=False,
            )
        return state

    def transfer(self, target: ManagementTarget, step: UpdateStep) -> str:
        if not step.image_uri:
            raise self.error("transfer", f"no image URI for {step.component_type} {step.to_version}",
                             recoverable=False)
        root = self._call(
            target, SOFTWARE_INSTALLATION, "InstallFromURI",
            f"<p:URI>{escape(step.image_uri)}</p:URI>",
            "transfer", SELECTORS_INSTALL,
        )
        job_id = find_text(root, "Selector") or find_text(root, "JobID")
        if not job_id:
            raise self.error("transfer", "InstallFromURI returned no job id")

        self.logger.info(f"{target.host_id}: staging {step.image_uri} as {job_id}")
        self.wait_until(
            "transfer",
            lambda: self._job_state(target, job_id, "transfer") in STAGED_JOB_STATES,
            self.task_timeout,
        )
        return job_id

    def apply(self, target: ManagementTarget, step: UpdateStep, handle: str) -> None:
        self.wait_until(
            "apply",
            lambda: self._job_state(target, handle, "apply") in APPLIED_JOB_STATES,
            self.task_timeout,
        )

    def abort(self, target: ManagementTarget, handle: str) -> None:
        self._call(target, JOB_SERVICE, "DeleteJobQueue", f"<p:JobID>{escape(handle)}</p:JobID>",
                   "abort", SELECTORS_JOB_SERVICE)

    def reboot(self, target: ManagementTarget) -> None:
        self._call(target, POWER_SERVICE, "RequestPowerStateChange",
                   f"<p:PowerState>{POWER_CYCLE}</p:PowerState>", "reboot", SELECTORS_POWER)
        self.sleep(self.poll_interval)
        self.wait_until("reboot", lambda: self.check_health(target), self.reboot_timeout,
                        tolerate_errors=True)

    def _software_inventory(self, target: ManagementTarget) -> List[Dict[str, str]]:
        body = (
            '<wsen:Enumerate xmlns:wsen="http://schemas.xmlsoap.org/ws/2004/09/enumeration">'
            "<wsman:OptimizeEnumeration/><wsman:MaxElements>512</wsman:MaxElements>"
            "</wsen:Enumerate>"
        )
        root = self.invoke(target, ACTION_ENUMERATE, SOFTWARE_IDENTITY, body, "inventory")
        items = []
        for element in root.iter():
            if element.tag.endswith("}DCIM_SoftwareIdentity"):
                items.append({
                    "name": find_text(element, "ElementName"),
                    "version": find_text(element, "VersionString"),
                    "status": find_text(element, "Status"),
                })
        return items

    def get_firmware_version(self, target: ManagementTarget, component_type: str) -> str:
        for item in self._software_inventory(target):
            if item["status"].lower() == "installed" and matches_component(component_type, item["name"]):
                return item["version"]
        raise self.error("inventory", f"{component_type} not found in software inventory",
                         recoverable=False)

    def check_health(self, target: ManagementTarget) -> bool:
        root = self.invoke(target, ACTION_GET, SYSTEM_VIEW, "", "health",
                           {"InstanceID": "System.Embedded.1"})
        power = find_text(root, "PowerState")
        rollup = find_text(root, "PrimaryStatus")
        # PowerState 2 = on; PrimaryStatus 1 = OK
        return power == "2" and rollup in ("1", "")
