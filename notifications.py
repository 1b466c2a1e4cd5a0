"""
PedaClic — in-app notifications.
Types, default wording and payload checks. Delivery is one database row per
recipient, written by the routes.
"""
TYPES     = ('nouveau_cours', 'resultat_quiz', 'rappel_echeance', 'message_prof',
             'annonce', 'nouveau_abonnement', 'bienvenue')
STATUSES  = ('non_lue', 'lue', 'archivee')
AUDIENCES = ('eleve', 'parent', 'prof', 'admin', 'tous')
ENTITY_TYPES    = ('cours', 'quiz', 'sequence', 'autre')
BROADCAST_LIMIT = 500
DEFAULT_LIMIT   = 50

# type -> (default title, default message)
TEMPLATES = {
    'nouveau_cours':      ('Nouveau cours disponible',
                           "Un nouveau cours vient d'être publié dans votre matière."),
    'resultat_quiz':      ('Résultat de votre quiz',
                           'Votre résultat au quiz est disponible.'),
    'rappel_echeance':    ("Rappel d'échéance",
                           "N'oubliez pas votre examen approche."),
    'message_prof':       ('Message de votre professeur', ''),
    'annonce':            ('Annonce importante', ''),
    'nouveau_abonnement': ('Abonnement Premium activé 🎉',
                           'Votre abonnement Premium PedaClic est maintenant actif. '
                           'Profitez de tous les contenus !'),
    'bienvenue':          ('Bienvenue sur PedaClic !',
                           'Bienvenue sur PedaClic, la plateforme éducative sénégalaise. '
                           'Commencez votre apprentissage dès maintenant !'),
}


def compose(payload: dict) -> dict:
    """
    Validate what a sender wrote. Title and message fall back to the
    type's template. Raises ValueError.
    """
    ntype = payload.get('type') or 'annonce'
    if ntype not in TYPES:
        raise ValueError(f'Type must be one of: {", ".join(TYPES)}.')
    default_title, default_message = TEMPLATES[ntype]
    title   = (payload.get('title') or '').strip() or default_title
    message = (payload.get('message') or '').strip() or default_message
    if not message:
        raise ValueError('This notification needs a message.')
    entity_type = payload.get('entity_type')
    if entity_type and entity_type not in ENTITY_TYPES:
        raise ValueError(f'entity_type must be one of: {", ".join(ENTITY_TYPES)}.')
    return {'type': ntype, 'title': title[:200], 'message': message,
            'action_url': payload.get('action_url'), 'action_label': payload.get('action_label'),
            'entity_id': payload.get('entity_id'), 'entity_type': entity_type}


def counts(statuses: list) -> dict:
    """Badge counter for the bell: archived notifications are left out."""
    visible = [s for s in statuses if s != 'archivee']
    return {'total': len(visible), 'unread': sum(1 for s in visible if s == 'non_lue')}
