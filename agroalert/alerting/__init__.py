"""
AgroAlert Alerting Core.

Components:
- rules:        Declarative thresholds and the default rule table
- engine:       ConditionEvaluator (farm context + forecast → findings)
- materializer: Findings → scheduled alerts with channel copy
- store:        In-memory and SQL alert stores (dedup, claim, purge)
- channels:     Twilio WhatsApp and simulated delivery
- dispatcher:   Claim → send → mark sent / release
- stats:        Cumulative dispatch counters
"""
