"""API route modules, one APIRouter per resource."""
