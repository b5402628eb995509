"""
Notifications email du pipeline ETL des ventes

Configuration (variables d'environnement ou fichier sales_dwh.conf) :
    ETL_SMTP_HOST      / etl_smtp_host     : Serveur SMTP        (defaut: smtp.gmail.com)
    ETL_SMTP_PORT      / etl_smtp_port     : Port SMTP           (defaut: 587)
    ETL_SMTP_USER      / etl_smtp_user     : Email expediteur
    ETL_SMTP_PASSWORD  / etl_smtp_password : Mot de passe SMTP
    ETL_NOTIFY_EMAIL   / etl_notify_email  : Email destinataire

Un echec d'envoi est journalise mais ne fait jamais echouer le pipeline.
"""

import html
import smtplib
import logging
from datetime import datetime
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

logger = logging.getLogger('etl_notifier')


def get_smtp_config(config: dict) -> dict:
    return {
        'host':     config.get('etl_smtp_host', 'smtp.gmail.com'),
        'port':     int(config.get('etl_smtp_port', 587)),
        'user':     config.get('etl_smtp_user', ''),
        'password': config.get('etl_smtp_password', ''),
        'to':       config.get('etl_notify_email', ''),
    }


def _send_email(subject: str, body_html: str, smtp_config: dict) -> bool:
    """Envoie un email via SMTP TLS. Retourne True si succes."""
    if not smtp_config.get('user') or not smtp_config.get('to'):
        logger.warning(
            "Notification email ignoree : ETL_SMTP_USER ou ETL_NOTIFY_EMAIL non configure"
        )
        return False

    try:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From']    = smtp_config['user']
        msg['To']      = smtp_config['to']
        msg.attach(MIMEText(body_html, 'html', 'utf-8'))

        with smtplib.SMTP(smtp_config['host'], smtp_config['port']) as server:
            server.ehlo()
            server.starttls()
            server.login(smtp_config['user'], smtp_config['password'])
            server.sendmail(smtp_config['user'], smtp_config['to'], msg.as_string())

        logger.info(f"Email envoye a {smtp_config['to']} : {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Echec envoi email : {e}")
        return False


_COULEURS = {'Success': '#d4edda', 'Failed': '#f8d7da', 'Running': '#fff3cd'}
_HEADER_STYLE = "background-color:#343a40;color:white;padding:8px"
_TABLE_STYLE  = "border='1' cellspacing='0' style='border-collapse:collapse;width:100%'"


def _build_stage_rows(etapes: dict) -> str:
    rows = ''
    for etape, info in etapes.items():
        statut = info.get('statut', '?')
        duree  = f"{info.get('duree_sec', 0):.1f}s" if info.get('duree_sec') else '-'
        erreur = html.escape(str(info.get('erreur') or '')[:150])
        rows += f"""
        <tr style="background-color:{_COULEURS.get(statut, '#ffffff')}">
            <td style="padding:6px 10px"><b>{etape}</b></td>
            <td style="padding:6px 10px;text-align:center">{statut}</td>
            <td style="padding:6px 10px;text-align:center">{info.get('nb_lignes', '-')}</td>
            <td style="padding:6px 10px;text-align:center">{info.get('heure', '-')}</td>
            <td style="padding:6px 10px;text-align:center">{duree}</td>
            <td style="padding:6px 10px;font-family:monospace;font-size:11px">{erreur}</td>
        </tr>"""
    return rows


def _build_body(titre: str, couleur: str, rapport: dict, extra: str = '') -> str:
    now = datetime.now().strftime('%d/%m/%Y %H:%M:%S')
    load = rapport.get('load_result') or {}
    return f"""
    <html><body style="font-family:Arial,sans-serif;margin:20px;color:#212529">
    <h2 style="color:{couleur}">{titre}</h2>
    <p>
        <b>Date :</b> {now}<br>
        <b>Run :</b> {rapport.get('run_id', '-')}<br>
        <b>Faits :</b> {load.get('inserted', 0)} inseres,
        {load.get('rejected', 0)} rejetes, {load.get('skipped', 0)} ignores
    </p>
    {extra}
    <table {_TABLE_STYLE}>
        <tr>
            <th style="{_HEADER_STYLE}">Etape</th>
            <th style="{_HEADER_STYLE}">Statut</th>
            <th style="{_HEADER_STYLE}">Lignes</th>
            <th style="{_HEADER_STYLE}">Heure</th>
            <th style="{_HEADER_STYLE}">Duree</th>
            <th style="{_HEADER_STYLE}">Erreur</th>
        </tr>
        {_build_stage_rows(rapport.get('etapes', {}))}
    </table>
    </body></html>
    """


def send_success_email(rapport: dict, smtp_config: dict) -> bool:
    body = _build_body("ETL Ventes &mdash; Chargement reussi", '#28a745', rapport)
    subject = f"ETL Ventes - Succes - run {rapport.get('run_id', '')}"
    return _send_email(subject, body, smtp_config)


def send_error_email(etape: str, erreur: str, rapport: dict, smtp_config: dict) -> bool:
    """Alerte pour une etape en echec, avec l'etat des autres etapes."""
    extra = (f"<p style='color:#721c24'><b>Etape :</b> {etape}<br>"
             f"<b>Erreur :</b> <code>{html.escape(str(erreur)[:800])}</code></p>")
    body = _build_body("ETL Ventes &mdash; Erreur de chargement", '#dc3545', rapport, extra)
    subject = f"ETL Ventes - ERREUR {etape} - run {rapport.get('run_id', '')}"
    return _send_email(subject, body, smtp_config)
