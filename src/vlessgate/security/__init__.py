"""Security: session admission control."""

from vlessgate.security.admission import AdmissionController

__all__ = ["AdmissionController"]
