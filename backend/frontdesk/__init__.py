"""
Frontdesk AI Receptionist backend.

Answers clinic phone lines with an AI voice agent and executes the
agent's tool calls against the clinic's practice-management system or
calendar.
"""

__version__ = "1.0.0"
