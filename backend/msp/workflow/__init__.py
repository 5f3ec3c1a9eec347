"""
workflow — Service-request acknowledgment and start reminders.

Sub-modules:
    scheduler — ReminderScheduler: timer, sweep, ceilings
    store     — WorkflowStore interface + compare-and-set SQL implementation
    handlers  — TimeoutHandlers interface, admin broadcast and email reminders
    models    — Lifecycle states, scheduled actions, reminder policy
"""
