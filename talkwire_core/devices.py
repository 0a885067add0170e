"""Device descriptors the client can present to the server."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import LoginError, LoginErrorKind

# device type -> (default app version, system name, system version)
DEVICE_DETAILS: dict[str, tuple[str, str, str]] = {
    "DESKTOPWIN": ("9.2.0.3403", "WINDOWS", "10.0.0-NT-x64"),
    "DESKTOPMAC": ("9.2.0.3402", "MAC", "10.15.1"),
    "CHROMEOS": ("3.0.3", "Chrome_OS", "1"),
    "ANDROID": ("13.4.1", "Android OS", "14"),
    "ANDROIDSECONDARY": ("13.4.1", "Android OS", "14"),
    "IOS": ("14.2.0", "iOS", "18.1.1"),
    "IOSIPAD": ("14.2.0", "iOS", "18.1.1"),
    "WATCHOS": ("14.2.0", "Watch OS", "10.1"),
    "WEAROS": ("13.4.1", "Wear OS", "4"),
}


@dataclass(frozen=True)
class DeviceDescriptor:
    """Device type plus the versions reported in request headers."""

    type: str
    version: str
    system_name: str
    system_version: str

    @classmethod
    def resolve(cls, device: str, version: str | None = None) -> DeviceDescriptor:
        """Look up a device type, optionally overriding the app version.

        Raises:
            LoginError: UNSUPPORTED_DEVICE for unknown device types.
        """
        details = DEVICE_DETAILS.get(device)
        if details is None:
            raise LoginError(
                LoginErrorKind.UNSUPPORTED_DEVICE, f"Unsupported device: {device}."
            )
        default_version, system_name, system_version = details
        return cls(
            type=device,
            version=version or default_version,
            system_name=system_name,
            system_version=system_version,
        )

    @property
    def application_header(self) -> str:
        return f"{self.type}\t{self.version}\t{self.system_name}\t{self.system_version}"

    @property
    def user_agent(self) -> str:
        return f"Line/{self.version}"
