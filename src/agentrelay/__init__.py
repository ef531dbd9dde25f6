"""agentrelay - conversation orchestration for multi-channel chat agents.

Routes inbound chat events from messaging channels to configured virtual
agents, runs a bounded tool-calling loop against a completion backend
and dispatches the reply back through the originating channel.
"""

__version__ = "0.1.0"
