"""Round engine: crash points, bets, cashouts and the round cycle.

Nothing in this package imports Flask or Socket.IO. Transitions return the
events they produce and the RoundManager hands them to an emitter, keeping
transport concerns separated from the core game mechanics.
"""
