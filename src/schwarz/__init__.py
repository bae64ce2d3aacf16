"""
Top-level package for the project.

We keep four sibling subpackages:
- core: mesh, configs, cases, partitioning, distributed mesh, communication
- decomposition: interface topology + subdomain / interface sub-meshes
- operators: assembly, local solvers, interface operator, Krylov driver
- algorithm: end-to-end solve driver
"""

__all__ = ["core", "decomposition", "operators", "algorithm", "diagnostics"]
