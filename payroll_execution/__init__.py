"""
payroll_execution -- the payroll execution saga and its runtime wiring.

Drives payroll runs through prepare, authorize, submit and finalize against
an external transfer rail, recording every outcome in the PayrollLedger.

Architecture:
    payroll_execution/ is a top-level package.  Nothing in payroll_kernel/
    or payroll_config/ imports from it.
"""
