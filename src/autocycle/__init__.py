"""
autocycle — weighted activity scheduler for long-running automation.

Interleaves several long-duration activities in one control loop, choosing
what runs next by weight, dwelling on a choice for a minimum interval,
injecting scheduled and random breaks, and stopping when every target is
reached or the runtime ceiling passes.
"""

__version__ = "1.0.0"
