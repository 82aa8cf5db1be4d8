from __future__ import annotations

from typing import Dict, List


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Faturamento B2B",
    "proposal": "Proposta",
    "client": "Cliente",
    "vendor": "Vendedor",
    "installment": "Parcela de comissao",
    "fiscal_document": "NF-e",
    "reconciliation": "Conciliacao bancaria",
}


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "proposta": [
        {
            "key": "AWAITING_APPROVAL",
            "label": "Aguardando aprovacao financeira",
            "description": "Proposta enviada pelo vendedor aguardando analise do financeiro.",
        },
        {
            "key": "APPROVING",
            "label": "Em faturamento",
            "description": "Aprovacao em andamento; pedido sendo criado no Bling.",
        },
        {
            "key": "APPROVED",
            "label": "Faturada",
            "description": "Proposta aprovada com pedido criado no Bling e parcelas geradas.",
        },
        {
            "key": "REJECTED",
            "label": "Reprovada pelo financeiro",
            "description": "Proposta encerrada sem faturamento.",
        },
    ],
    "parcela": [
        {
            "key": "AWAITING_INVOICE",
            "label": "Aguardando NF",
            "description": "Parcela gerada, aguardando emissao da nota fiscal.",
        },
        {
            "key": "SCHEDULED",
            "label": "Agendada",
            "description": "Comissao agendada para liberacao.",
        },
        {
            "key": "PENDING",
            "label": "Pendente",
            "description": "Parcela em aberto aguardando pagamento do cliente.",
        },
        {
            "key": "OVERDUE",
            "label": "Atrasada",
            "description": "Parcela vencida sem pagamento registrado.",
        },
        {
            "key": "RELEASED",
            "label": "Liberada",
            "description": "Comissao liberada para pagamento ao vendedor.",
        },
        {
            "key": "PAID",
            "label": "Paga",
            "description": "Pagamento do cliente confirmado.",
        },
    ],
    "nfe": [
        {
            "key": "NOT_REQUESTED",
            "label": "Nao solicitada",
            "description": "Pedido ainda nao enviado ao Bling.",
        },
        {
            "key": "CREATING",
            "label": "Criando pedido",
            "description": "Pedido de venda sendo criado no Bling.",
        },
        {
            "key": "CREATED",
            "label": "Pedido criado",
            "description": "Pedido criado no Bling, NF-e ainda nao emitida.",
        },
        {
            "key": "SUBMITTING",
            "label": "Enviando NF-e",
            "description": "NF-e sendo gerada e enviada para a SEFAZ.",
        },
        {
            "key": "PENDING_AUTHORIZATION",
            "label": "Aguardando SEFAZ",
            "description": "NF-e enviada, aguardando autorizacao da SEFAZ.",
        },
        {
            "key": "AUTHORIZED",
            "label": "Autorizada",
            "description": "NF-e autorizada com DANFE disponivel.",
        },
        {
            "key": "REJECTED",
            "label": "Rejeitada",
            "description": "NF-e rejeitada pela SEFAZ; revise os dados fiscais.",
        },
    ],
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "proposal_saved": "Proposta registrada com sucesso.",
        "proposal_approved": "Faturamento aprovado! Pedido criado no Bling.",
        "proposal_rejected": "Proposta reprovada.",
        "approval_resumed": "Aprovacao concluida a partir da etapa pendente.",
        "nfe_authorized": "NF-e autorizada.",
        "nfe_pending": "NF-e em processamento na SEFAZ. Consulte novamente em instantes.",
        "nfe_requested": "NF-e enviada para autorizacao.",
        "installment_paid": "Parcela marcada como paga.",
        "reconciliation_done": "Conciliacao concluida.",
        "discount_assigned": "Desconto atribuido ao cliente.",
        "payment_batch_created": "Lote de pagamento criado com sucesso.",
    },
    "error": {
        "action_invalid": "Acao invalida para esta operacao.",
        "action_not_allowed_for_status": "Esta acao nao e permitida para o status atual.",
        "approval_already_processed": "Esta proposta ja foi processada e nao pode ser aprovada novamente.",
        "approval_partial_failure": "Conclua a aprovacao manualmente a partir do pedido informado.",
        "client_not_eligible": "Cliente nao habilitado para faturamento a prazo.",
        "batch_items_required": "Selecione ao menos uma comissao liberada para o lote.",
        "batch_reference_required": "Informe a referencia do lote de pagamento.",
        "batch_reference_taken": "Ja existe um lote com esta referencia.",
        "client_not_found": "Cliente nao encontrado.",
        "date_invalid": "Data invalida.",
        "fiscal_classification_missing": "Natureza de operacao nao configurada para este pedido.",
        "fiscal_validation_failed": "O Bling recusou os dados enviados. Revise os campos indicados.",
        "gateway_timeout": "O Bling demorou demais para responder. Tente novamente em instantes.",
        "gateway_unreachable": "Nao conseguimos falar com o Bling agora. Tente novamente em instantes.",
        "installment_not_found": "Parcela nao encontrada.",
        "inventory_insufficient": "Estoque insuficiente no Bling para um ou mais produtos.",
        "items_required": "Informe itens validos para continuar.",
        "items_without_sku": "Produto(s) sem SKU. Cadastre o SKU antes de faturar.",
        "nfe_not_requested": "Nenhum pedido Bling vinculado a esta proposta.",
        "payment_batch_not_found": "Lote de pagamento nao encontrado.",
        "proposal_not_found": "Proposta nao encontrada.",
        "quantity_invalid": "Quantidade invalida.",
        "resume_not_allowed": "Esta proposta nao possui aprovacao pendente de conclusao.",
        "status_invalid": "Status informado e invalido para esta etapa.",
        "status_unrecognized": "Status desconhecido. Corrija o cadastro antes de continuar.",
        "term_unknown": "Condicao de faturamento desconhecida.",
        "unexpected_error": "Nao foi possivel concluir a operacao. Tente novamente em instantes.",
        "valid_items_required": "Informe ao menos um item valido com preco unitario.",
        "vendor_not_found": "Vendedor nao encontrado.",
    },
}


def status_keys_for_group(group: str) -> List[str]:
    return [item["key"] for item in STATUS_GROUPS.get(group, [])]


def build_status_labels(group: str) -> Dict[str, str]:
    return {item["key"]: item["label"] for item in STATUS_GROUPS.get(group, [])}


def status_label(group: str, key: str, default: str | None = None) -> str:
    label = build_status_labels(group).get(str(key or ""))
    if label:
        return label
    if default is not None:
        return default
    return key


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)

