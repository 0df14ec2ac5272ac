from .documents import TenantDocument, OperatorDocument

__all__ = [
    'TenantDocument', 'OperatorDocument',
]
