"""
W3CP Signer

Attestation gateway that lifts (cpId, did) bindings onto a Substrate
chain as signed system.remark extrinsics, at most once per pair.
"""

__version__ = "0.1.0"
