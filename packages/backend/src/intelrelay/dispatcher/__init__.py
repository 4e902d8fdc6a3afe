"""Delivery dispatcher process.

Learn: The dispatcher can run as its own process (python -m
intelrelay.dispatcher.main) or inside the API server's lifespan when
INTELRELAY_RUN_DISPATCHER_IN_API=true. Run exactly one of the two;
the dispatcher assumes it is the only instance polling the job table.
"""
