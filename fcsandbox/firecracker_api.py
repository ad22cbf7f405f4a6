#!/usr/bin/env python3

import requests
import requests_unixsocket

from .errors import FirecrackerAPIError
from .log import get_logger

logger = get_logger(__name__)


class FirecrackerAPI:
    """Firecracker API client over the VM's unix control socket"""

    def __init__(self, socket_path, timeout=5):
        self.socket_path = socket_path
        self.timeout = timeout
        self.session = requests_unixsocket.Session()
        self.base_url = f"http+unix://{self.socket_path.replace('/', '%2F')}"

    def close(self):
        self.session.close()

    def _make_request(self, method, endpoint, data=None):
        """Make HTTP request to Firecracker API

        Raises:
            FirecrackerAPIError: on transport failures and non-2xx answers
        """
        url = f"{self.base_url}{endpoint}"
        try:
            if method == "PUT":
                response = self.session.put(url, json=data, timeout=self.timeout)
            elif method == "PATCH":
                response = self.session.patch(url, json=data, timeout=self.timeout)
            elif method == "GET":
                response = self.session.get(url, timeout=self.timeout)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")
        except requests.RequestException as e:
            raise FirecrackerAPIError(f"{method} {endpoint} failed: {e}") from e

        if response.status_code not in (200, 204):
            raise FirecrackerAPIError(
                f"{method} {endpoint} returned {response.status_code}: {response.text.strip()}",
                response_status=response.status_code,
            )
        return response

    def check_socket_in_use(self):
        """Check if Firecracker process is listening on socket"""
        try:
            self.session.get(f"{self.base_url}/", timeout=self.timeout)
            return True
        except requests.RequestException:
            return False

    def get_vm_config(self):
        """Get VM configuration from Firecracker API"""
        try:
            return self._make_request("GET", "/vm/config").json()
        except (FirecrackerAPIError, ValueError):
            return None

    def set_boot_source(self, kernel_path, boot_args):
        """Set the boot source for the VM"""
        data = {
            "kernel_image_path": kernel_path,
            "boot_args": boot_args
        }
        self._make_request("PUT", "/boot-source", data)

    def set_rootfs(self, drive):
        """Set the root filesystem drive"""
        self._make_request("PUT", f"/drives/{drive['drive_id']}", drive)

    def set_machine_config(self, vcpu_count, mem_size_mib):
        """Set machine configuration (CPU and memory)"""
        data = {
            "vcpu_count": vcpu_count,
            "mem_size_mib": mem_size_mib
        }
        self._make_request("PUT", "/machine-config", data)

    def set_network_interface(self, iface_id, host_dev_name, guest_mac=None):
        """Set network interface configuration"""
        data = {
            "iface_id": iface_id,
            "host_dev_name": host_dev_name
        }
        if guest_mac:
            data["guest_mac"] = guest_mac
        self._make_request("PUT", f"/network-interfaces/{iface_id}", data)

    def start_microvm(self):
        """Start the microVM"""
        self._make_request("PUT", "/actions", {"action_type": "InstanceStart"})

    def send_ctrl_alt_del(self):
        """Ask the guest to shut down cleanly"""
        self._make_request("PUT", "/actions", {"action_type": "SendCtrlAltDel"})
