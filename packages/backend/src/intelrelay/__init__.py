"""intelrelay — report delivery backend.

Generated business-intelligence reports are queued as delivery jobs and
sent to Webex rooms or people by a long-lived dispatcher process. This
package holds that dispatcher, its Postgres-backed job store, the Webex
executor, and the audit trail of every delivery attempt.
"""

__version__ = "0.1.0"
