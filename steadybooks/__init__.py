"""SteadyBooks integration layer: QuickBooks sync and Stripe billing reconciliation."""

__version__ = "0.1.0"
