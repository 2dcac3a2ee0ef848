from .store import AssociationStore
