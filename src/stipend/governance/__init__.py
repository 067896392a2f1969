"""Governance — administrative authority and pause control."""

from stipend.governance.authority import AdministratorGate, PauseSwitch

__all__ = ["AdministratorGate", "PauseSwitch"]
