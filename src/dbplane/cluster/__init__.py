"""Cluster machines: VMs, nodes, topology (resources) and backup lineage (timelines)."""
