"""
snapsync: rsync backups from a master host to target hosts.

This package transfers directories with rsync, keeps hard-linked
time-series snapshots on the targets and prunes old snapshots under an
injected retention policy, never removing the latest one.
"""

__version__ = "0.1.0"
