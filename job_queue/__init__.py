"""
Reminder jobs — generation from reminder rules, leasing and dispatch.

- Rule engine and reminder rules CREATE jobs in the workflow store
- The scheduler tick LEASES due jobs and sends them through the gateway
- Retries are rescheduled with exponential backoff up to max_retries
"""
