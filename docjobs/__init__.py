"""
DocJobs: batch ingestion jobs processed by supervised worker processes.
"""
