"""
AgroAlert — Weather-Condition Alerting for Farms.

Architecture:
- weather/      Forecast sources (OpenWeather, deterministic synthetic, fallback)
- alerting/     Rule table, evaluator, materializer, store, channels, dispatcher
- db/           SQLAlchemy async models for the durable alert store
- services/     Farm directory, scheduler, notification service facade
- api/          FastAPI routes over the notification service

Flow: Farm context + forecast → RiskFinding → Alert (dedup, schedule) → WhatsApp
"""

__version__ = "1.0.0"
