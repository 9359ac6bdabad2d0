"""
MedVault core package.
Provides the envelope codec, access tokens with expiry policies, per-file ACLs,
key-value and blob stores, and the upload/view flows built on them.
"""

__all__ = ["acl", "blobs", "crypto", "links", "registry", "store", "tokens", "vault"]
