"""
Constitutional scoring for Aikira proposals.

Maps proposal text to weighted value / fairness / protection scores,
a consensus index, approval flags and a templated spoken response.
Pure computation: no I/O beyond loading the response templates.
"""
