"""
Forge: the plan / context / implement / validate / correct / test loop
that turns one delegation into a committed change.
"""
