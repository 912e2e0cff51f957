"""
Test suite for the ticketload load generator.

This package contains:
- unit/: ramp profile, scheduler, scenario, metrics, thresholds and
  configuration tests with stubbed I/O and a fake clock
- integration/: full runs against a fake ticketing backend served over
  real HTTP
"""
