"""Collector package for kubemeta.

Provides the Kubernetes API adapter and the list-then-watch reconciliation
loops that keep the metadata caches fresh.

Submodules
----------
fetcher              -- MetadataFetcher: get/list/watch over CoreV1Api, error classification.
parsing              -- MetadataParser: raw pod/namespace objects to metadata maps.
watcher              -- BaseReconciler: list/watch state machine, 410 relist, backoff.
pod_reconciler       -- PodReconciler: node-scoped pod cache maintenance.
namespace_reconciler -- NamespaceReconciler: namespace cache maintenance.
"""
