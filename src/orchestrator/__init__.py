"""Plan/apply engine for declarative infrastructure.

Builds a dependency graph from manifest resources, diffs it against the
persisted state to produce a plan, and applies the plan through a provider
with bounded parallelism under an exclusive state lock.
"""
