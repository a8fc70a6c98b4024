"""
retail_services -- transaction orchestrators.

Composes the kernel engines (inventory ledger, GL posting, idempotency
guard, audit sink) into the POS and Telebirr workflows.  Each public
operation owns its transaction boundary.
"""
