from chainmind.agent.contracts import DECISION_FUNCTION_NAME, DECISION_TOOL, DecisionContext
from chainmind.agent.oracle import DecisionOracle, LlmClient, LlmDecisionOracle, PromptBuilder

__all__ = [
    "DECISION_FUNCTION_NAME",
    "DECISION_TOOL",
    "DecisionContext",
    "DecisionOracle",
    "LlmClient",
    "LlmDecisionOracle",
    "PromptBuilder",
]
