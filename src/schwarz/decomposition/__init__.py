"""
Decomposition: interface topology and subdomain / interface sub-meshes.
"""

from .interfaces import (
    EmptyInterface,
    Interface,
    InterfaceMap,
    InterfaceTopologyBuilder,
    RealizedInterface,
    interface_identity,
    interface_index,
    make_interface,
)
from .submesh import SubMesh, SubdomainMeshBuilder

__all__ = [
    "EmptyInterface",
    "Interface",
    "InterfaceMap",
    "InterfaceTopologyBuilder",
    "RealizedInterface",
    "interface_identity",
    "interface_index",
    "make_interface",
    "SubMesh",
    "SubdomainMeshBuilder",
]
