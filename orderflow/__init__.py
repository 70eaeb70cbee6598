"""
                Restaurant Order Workflow

Order lifecycle and staff-assignment backend: a role-scoped status state
machine, exclusive chef/waiter claims backed by compare-and-swap, and
real-time fan-out of every change.
"""

__version__ = "1.0.0"
