"""
Flash-sale load generator for a queue-gated ticket reservation API.

Simulates many concurrent fans who enter a waiting queue, poll until
admitted, acquire a reservation token and try to reserve a random seat.
Concurrency follows a ramp profile; latency, queueing delay and
reservation success are aggregated and compared against pass/fail
thresholds at the end of the run.

Traffic is generated by :mod:`ticketload.coordinator` (threads) or by
the Locust driver in :mod:`ticketload.locustfile`.
"""

__version__ = "0.1.0"
