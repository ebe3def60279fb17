"""
GraphQL documents for the storefront Admin API.

Every collection query takes `$first` / `$after` so it can be driven by
CursorPaginator, and selects `pageInfo { hasNextPage endCursor }`.
"""

ORDERS_QUERY = """
query getOrders($first: Int!, $after: String, $query: String) {
  orders(first: $first, after: $after, query: $query, sortKey: CREATED_AT, reverse: true) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      name
      createdAt
      totalPriceSet { shopMoney { amount currencyCode } }
      subtotalPriceSet { shopMoney { amount } }
      totalDiscountsSet { shopMoney { amount } }
      totalTaxSet { shopMoney { amount } }
      displayFinancialStatus
      customer {
        id
        firstName
        lastName
        email
        ordersCount
      }
      discountCodes
      lineItems(first: 50) {
        nodes {
          title
          quantity
          originalTotalSet { shopMoney { amount } }
          product { id }
        }
      }
    }
  }
}
"""

CUSTOMERS_QUERY = """
query getCustomers($first: Int!, $after: String) {
  customers(first: $first, after: $after, sortKey: TOTAL_SPENT, reverse: true) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      firstName
      lastName
      email
      createdAt
      ordersCount
      totalSpentV2 { amount currencyCode }
      lastOrder { id createdAt }
    }
  }
}
"""

_DISCOUNT_CODE_FIELDS = """
        title
        status
        startsAt
        endsAt
        usageLimit
        codes(first: 10) {
          nodes {
            code
            usageCount: asyncUsageCount
          }
        }"""

DISCOUNTS_QUERY = """
query getDiscounts($first: Int!, $after: String, $query: String) {
  codeDiscountNodes(first: $first, after: $after, query: $query) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      codeDiscount {
        ... on DiscountCodeBasic {%(fields)s
          customerGets {
            value {
              ... on DiscountPercentage { percentage }
              ... on DiscountAmount { amount { amount } }
            }
          }
        }
        ... on DiscountCodeBxgy {%(fields)s
        }
        ... on DiscountCodeFreeShipping {%(fields)s
        }
      }
    }
  }
}
""" % {"fields": _DISCOUNT_CODE_FIELDS}


def discount_search_query(term: str) -> str:
    """Remote search filter matching code or title."""
    return f"title:*{term}* OR code:*{term}*" if term else ""
