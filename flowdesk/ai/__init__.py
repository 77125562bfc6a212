"""
Flowdesk Workflow Coordinator
AI module: model access for workflow steps.

Submodules:
    - gateway: model providers (Gemini, local stub), retry loop, error classification
    - retry: backoff policy (exponential + jitter, injectable sleep)
    - pii: redaction of personal data before it leaves for the model
    - step_executor: one AI action step (blueprint, prompt, outcome)
"""
