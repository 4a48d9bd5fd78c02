"""After-commit domain events.

Events are published only once the unit of work that produced them has
committed.  Delivery is best-effort: a failed publish is logged and never
undoes or fails the transition.
"""
