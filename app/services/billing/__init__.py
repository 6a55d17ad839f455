"""Tenant subscription billing.

Submodules, bottom-up: ``errors``, ``money``, ``dates``, ``plans``,
``discounts``, ``ledger``, ``channels``, ``subscriptions``,
``notifications``, ``settlement`` and ``sweeps``. Import from the submodule
that owns a name; this package does not re-export.
"""
