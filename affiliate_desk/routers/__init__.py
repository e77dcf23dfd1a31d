"""Router package exports."""
from . import auth, commissions, leads, profiles, sales, settlements

__all__ = [
	"auth",
	"commissions",
	"leads",
	"profiles",
	"sales",
	"settlements",
]
