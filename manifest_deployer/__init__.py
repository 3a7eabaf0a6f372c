"""
Manifest deployer — reconciles rendered Kubernetes manifests of a DeployItem
onto a target cluster: apply with ownership policies, orphan cleanup,
readiness checks and finalizer-guarded teardown.
"""

VERSION = "0.1.0"
