"""Command line interface for raft_bench."""
