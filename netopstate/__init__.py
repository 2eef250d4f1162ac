"""Reconciliation states for the NIC driver, macvlan networks and the RDMA shared device plugin."""

__version__ = "0.1.0"