"""
Workspace layer: path security, subprocess and git plumbing, and the
manager that owns per-task checkouts.
"""
