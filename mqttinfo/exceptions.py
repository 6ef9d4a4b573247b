"""
Custom Exception Hierarchy for mqttinfo

Provides structured exceptions so the engine can tell fatal conditions
(abort the current phase) apart from soft ones (feature recorded absent).
All custom exceptions inherit from MqttInfoError.
"""
from typing import Optional


class MqttInfoError(Exception):
    """
    Base exception for all mqttinfo-specific errors.

    All custom exceptions should inherit from this class to allow
    catching all probing errors with a single except clause.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Configuration Errors

class ConfigurationError(MqttInfoError):
    """
    Invalid configuration or command-line input.

    Raised when target or credential settings cannot be used for probing.
    """
    pass


# Protocol and Parsing Errors

class ProtocolError(MqttInfoError):
    """
    Protocol-related errors during encoding or decoding.

    Base class for all packet handling errors.
    """
    pass


class ParseError(ProtocolError):
    """Failed to decode bytes as an MQTT packet."""
    pass


# Network and Transport Errors

class TransportError(MqttInfoError):
    """
    Network transport failures.

    Base class for all network communication errors.
    """
    pass


class ConnectionError(TransportError):
    """Failed to establish connection to the broker."""
    pass


class ConnectionRefusedError(ConnectionError):
    """Broker actively refused the connection (ECONNREFUSED)."""
    pass


class ConnectionTimeoutError(ConnectionError):
    """Dial attempt timed out."""
    pass


class SendError(TransportError):
    """Failed to send data to the broker."""
    pass


class ReceiveError(TransportError):
    """Failed to receive a response from the broker."""
    pass


class ReceiveTimeoutError(ReceiveError):
    """Per-read deadline expired without data."""
    pass


# Handshake Errors

class HandshakeError(MqttInfoError):
    """
    CONNECT/CONNACK exchange failed.

    Raised for truncated or missing CONNACKs and for rejected connection
    requests. ``reason_code`` is None when no usable CONNACK was read.
    """
    def __init__(
        self,
        message: str,
        reason_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        merged = dict(details or {})
        if reason_code is not None:
            merged.setdefault("reason_code", reason_code)
        super().__init__(message, merged)
        self.reason_code = reason_code


# Probing Errors

class ProbeError(MqttInfoError):
    """
    Unrecoverable failure of a probing phase.

    Base class for errors that abort an analysis phase.
    """
    pass


class LivenessError(ProbeError):
    """Broker did not answer the initial PINGREQ of a phase."""
    pass
