"""
Grade Sync Engine

Computes per-student outcome averages from Canvas rollups and writes them back
to a target outcome, with resumable runs, bulk job polling and read-back
verification.
"""
