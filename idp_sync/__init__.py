"""
IdP Octelium Sync - Render users and groups from an Identity Provider into Octelium manifests.

This package fetches users, groups and memberships from an Identity Provider,
applies an operator-supplied group mapping and writes declarative Octelium
manifest files.
"""

__version__ = "1.0.0"
__author__ = "IdP Sync Team"
