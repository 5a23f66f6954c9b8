# TSRexPy package init
"""
TSRexPy: Python CLI for TSS/TSR Analysis

Clusters transcription start sites (TSSs) into transcription start regions
(TSRs), marks dominant TSSs, computes TSR shape metrics and conditions the
resulting tables (grouping, quantiling, ordering).
"""

__version__ = "0.1.0"

from TSRexPy.clustering import cluster_tss
from TSRexPy.associate import associate_with_tsr, mark_dominant, associate_and_mark
from TSRexPy.metrics import tsr_metrics, compute_tsr_metrics, TSRMetrics, UndefinedMetrics
from TSRexPy.conditioning import (
    condition,
    condition_frames,
    conditioned_table,
    ConditioningDescriptor,
    QuantileSpec,
    OrderSpec,
)
from TSRexPy.config import ClusteringConfig, MetricsConfig
from TSRexPy.main import app, main

__all__ = [
    'app',
    'main',
    'cluster_tss',
    'associate_with_tsr',
    'mark_dominant',
    'associate_and_mark',
    'tsr_metrics',
    'compute_tsr_metrics',
    'TSRMetrics',
    'UndefinedMetrics',
    'condition',
    'condition_frames',
    'conditioned_table',
    'ConditioningDescriptor',
    'QuantileSpec',
    'OrderSpec',
    'ClusteringConfig',
    'MetricsConfig',
    '__version__',
]
