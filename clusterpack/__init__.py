"""
clusterpack - package resolution and phased cluster upgrades

Resolves installed, latest and configuration packages in a label-annotated
package store, and drives upgrade plans through a phase state machine.
"""

__version__ = "0.1.0"


__all__ = ["ClusterpackConfig", "load_config", "get_clusterpack_home"]

from .config import ClusterpackConfig, load_config, get_clusterpack_home
