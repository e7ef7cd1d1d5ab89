"""Expansion engine: shape, grouping, trace, sub-unit expansion and combine.

Everything in here is pure planning. Building sub-units and persisting results
happen in ``dynplan.core.run`` and ``dynplan.core.io``.
"""
