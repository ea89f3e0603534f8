"""Confidence-weighted RMSE of a partitioned matrix-factorization model.

Each worker holds the user factors of the rows it owns and the item factors of
every worker. Test rows are remapped to local indices, item ownership is
resolved from the partition boundary table, predictions are dot products of
latent vectors, and per-task `(sum, count)` partials are reduced into one RMSE.
"""
