"""
Authentication package for the IoB client SDK.

This package contains the token lifecycle: pluggable token storage with
expiry cleanup and cross-process change notification, the auth manager with
automatic single-flight renewal, and the mTLS auth service client.
"""
