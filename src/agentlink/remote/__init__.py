"""HTTP clients for the two remote backends."""

from agentlink.remote._http import JsonHttpClient
from agentlink.remote.hub import HubClient
from agentlink.remote.pairing import PairingClient

__all__ = ["HubClient", "JsonHttpClient", "PairingClient"]
