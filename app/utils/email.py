import logging
from email.message import EmailMessage
from typing import Any, Dict, Optional

import aiosmtplib

from app.config import settings

logger = logging.getLogger(__name__)

# Modèles de notification : type -> (sujet, corps)
NOTIFICATION_TEMPLATES: Dict[str, tuple] = {
    "nouvelle_demande": (
        "Nouvelle demande de transport",
        "Bonjour {prenom},\n\nVous avez reçu une nouvelle demande pour votre annonce « {titre} ».\n"
        "Connectez-vous pour y répondre : {lien}",
    ),
    "demande_acceptee": (
        "Votre demande a été acceptée",
        "Bonjour {prenom},\n\nVotre demande pour « {titre} » a été acceptée.\n"
        "Numéro de suivi : {numeroSuivi}",
    ),
    "demande_refusee": (
        "Votre demande a été refusée",
        "Bonjour {prenom},\n\nVotre demande pour « {titre} » a été refusée.",
    ),
    "statut_demande": (
        "Mise à jour de votre envoi",
        "Bonjour {prenom},\n\nVotre envoi {numeroSuivi} est maintenant : {statut}.",
    ),
    "litige_signale": (
        "Litige signalé",
        "Bonjour {prenom},\n\nUn litige a été signalé sur la demande {demandeId}.\nMotif : {motif}",
    ),
    "litige_resolu": (
        "Litige résolu",
        "Bonjour {prenom},\n\nLe litige concernant la demande {demandeId} a été résolu.\n{resolution}",
    ),
    "statut_compte": (
        "Mise à jour de votre compte",
        "Bonjour {prenom},\n\nLe statut de votre compte est maintenant : {statut}.\n{raison}",
    ),
    "verification_email": (
        "Vérifiez votre adresse email",
        "Bonjour {prenom},\n\nConfirmez votre adresse : {lien}",
    ),
    "reset_password": (
        "Réinitialisation du mot de passe",
        "Bonjour {prenom},\n\nRéinitialisez votre mot de passe (valable 10 minutes) : {lien}",
    ),
    "bienvenue_admin": (
        "Bienvenue dans l'équipe TransportConnect",
        "Bonjour {prenom},\n\nVotre compte administrateur a été créé avec l'adresse {email}.",
    ),
}


async def send_email_async(subject: str, email_to: str, body: str):
    message = EmailMessage()
    message["From"] = settings.MAIL_FROM
    message["To"] = email_to
    message["Subject"] = subject
    message.set_content(body)

    await aiosmtplib.send(
        message,
        hostname=settings.MAIL_SERVER,
        port=settings.MAIL_PORT,
        username=settings.MAIL_USERNAME or None,
        password=settings.MAIL_PASSWORD or None,
        start_tls=True,
    )


def render_template(template: str, data: Dict[str, Any]) -> Optional[tuple]:
    if template not in NOTIFICATION_TEMPLATES:
        return None
    subject, body = NOTIFICATION_TEMPLATES[template]
    values = {"lien": settings.FRONTEND_URL, **{k: ("" if v is None else v) for k, v in data.items()}}
    try:
        return subject, body.format(**values)
    except KeyError as e:
        logger.warning(f"⚠️ Variable manquante {e} pour le modèle '{template}'")
        return subject, body


async def send_email_safe(email_to: Optional[str], template: str, data: Dict[str, Any]) -> bool:
    """
    Envoi « au mieux » : un échec est journalisé et n'interrompt jamais l'opération appelante.
    """
    if not email_to:
        return False
    if not settings.MAIL_ENABLED:
        logger.info(f"📧 Email '{template}' non envoyé à {email_to} (MAIL_ENABLED=false)")
        return False

    rendered = render_template(template, data)
    if rendered is None:
        logger.warning(f"⚠️ Modèle d'email inconnu : {template}")
        return False

    subject, body = rendered
    try:
        await send_email_async(subject, email_to, body)
        logger.info(f"📧 Email '{template}' envoyé à {email_to}")
        return True
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error(f"❌ Échec d'envoi de l'email '{template}' à {email_to} : {e}")
        return False


async def notify_user(user: Optional[Dict[str, Any]], template: str, data: Dict[str, Any]) -> bool:
    """Notifie un utilisateur (document Mongo) par email, sans jamais lever."""
    if not user:
        return False
    payload = {"prenom": user.get("prenom", ""), "email": user.get("email"), **data}
    return await send_email_safe(user.get("email"), template, payload)
