"""Operations gateway for prediction-market deployments."""

__version__ = "0.1.0"
